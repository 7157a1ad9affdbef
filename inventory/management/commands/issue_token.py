"""
Management command to issue API tokens.

Usage:
    python manage.py issue_token --store 1 --cashier Maria
    python manage.py issue_token --store 1 --customer 7
"""
from django.core.management.base import BaseCommand, CommandError

from core.authentication import issue_customer_token, issue_store_token
from inventory.models import Store


class Command(BaseCommand):
    help = 'Issue a store terminal token or a public shop customer token'

    def add_arguments(self, parser):
        parser.add_argument('--store', type=int, required=True, help='Store id')
        group = parser.add_mutually_exclusive_group()
        group.add_argument('--cashier', help='Cashier name selected on the terminal')
        group.add_argument('--customer', type=int, help='Customer id (public shop token)')

    def handle(self, *args, **options):
        from orders.models import Customer

        store = Store.objects.filter(pk=options['store'], is_active=True).first()
        if store is None:
            raise CommandError(f"Active store {options['store']} not found")

        if options['customer'] is not None:
            customer = Customer.objects.filter(pk=options['customer'], store=store).first()
            if customer is None:
                raise CommandError(f"Customer {options['customer']} not found in store {store.pk}")
            token = issue_customer_token(customer)
            self.stderr.write(f"Customer token for {customer.name} @ {store.name}")
        else:
            token = issue_store_token(store, cashier=options['cashier'])
            self.stderr.write(f"Store token for {store.name} ({options['cashier'] or 'no cashier'})")

        self.stdout.write(token)
