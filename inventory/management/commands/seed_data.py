"""
Management command to seed the database with sample data.

Generates:
- stores with a URL slug each
- products per store with opening stock (quantity == available, nothing reserved)
- public shop customers per store

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing data first
"""
import random
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils.text import slugify

from inventory.models import Product, Store


PRODUCT_TEMPLATES = {
    'Beverages': ['Bottled Water', 'Iced Tea', 'Cola', 'Orange Juice', 'Instant Coffee'],
    'Snacks': ['Potato Chips', 'Peanuts', 'Chocolate Bar', 'Crackers', 'Cookies'],
    'Household': ['Dish Soap', 'Laundry Powder', 'Trash Bags', 'Paper Towels', 'Sponges'],
    'Personal Care': ['Shampoo', 'Toothpaste', 'Bath Soap', 'Deodorant', 'Lotion'],
    'Canned Goods': ['Corned Beef', 'Sardines', 'Tuna Flakes', 'Baked Beans', 'Fruit Cocktail'],
    'Electronics': ['USB-C Cable', 'Power Bank', 'Earphones', 'AA Batteries', 'Phone Charger'],
}

SIZES = ['Small', 'Regular', 'Large', 'Family Pack', 'Value Pack']

CITIES = [
    'Manila', 'Quezon City', 'Cebu', 'Davao', 'Makati', 'Pasig',
    'Taguig', 'Baguio', 'Iloilo', 'Cagayan de Oro',
]
STORE_TYPES = ['Main', 'Downtown', 'Mall', 'Express']
CUSTOMER_NAMES = ['Ana', 'Ben', 'Carla', 'Dino', 'Ella', 'Franco', 'Gina', 'Hector']


class Command(BaseCommand):
    help = 'Seed the database with sample stores, products and customers'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding',
        )
        parser.add_argument(
            '--stores',
            type=int,
            default=3,
            help='Number of stores to create (default: 3)',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=40,
            help='Number of products per store (default: 40)',
        )
        parser.add_argument(
            '--customers',
            type=int,
            default=5,
            help='Number of shop customers per store (default: 5)',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing data...')
            self._clear_data()

        self.stdout.write('Starting database seeding...')

        with transaction.atomic():
            stores = self._create_stores(options['stores'])
            for store in stores:
                self._create_products(store, options['products'])
                self._create_customers(store, options['customers'])

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))
        self.stdout.write('Issue a terminal token with: python manage.py issue_token --store <id> --cashier <name>')

    def _clear_data(self):
        """Clear all existing data."""
        from orders.models import Cart, Customer, Sale

        Cart.objects.all().delete()
        Sale.objects.all().delete()
        Customer.objects.all().delete()
        Product.objects.all().delete()
        Store.objects.all().delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_stores(self, count):
        """Create sample stores with unique slugs."""
        stores = []
        for i in range(count):
            city = CITIES[i % len(CITIES)]
            name = f"{city} {random.choice(STORE_TYPES)} Store"
            slug = slugify(f"{name}-{i + 1}")
            store, created = Store.objects.get_or_create(
                slug=slug,
                defaults={
                    'name': name,
                    'location': f"{random.randint(1, 999)} Rizal Avenue, {city}",
                }
            )
            stores.append(store)
            if created:
                self.stdout.write(f'  Created store #{store.pk}: {name}')

        self.stdout.write(self.style.SUCCESS(f'Created {len(stores)} stores'))
        return stores

    def _create_products(self, store, count):
        """Create products with consistent opening stock."""
        products = []
        names = set()
        for i in range(count):
            category = random.choice(list(PRODUCT_TEMPLATES))
            name = f"{random.choice(PRODUCT_TEMPLATES[category])} {random.choice(SIZES)}"
            if name in names:
                name = f"{name} #{i + 1}"
            names.add(name)

            price = Decimal(str(round(random.uniform(10, 800), 2)))
            discount_price = None
            if random.random() < 0.2:
                discount_price = (price * Decimal('0.85')).quantize(Decimal('0.01'))
            stock = random.randint(0, 200)

            products.append(Product(
                store=store,
                name=name,
                sku=f"{store.pk}-{i + 1:05d}",
                category=category,
                price=price,
                discount_price=discount_price,
                cost=(price * Decimal('0.6')).quantize(Decimal('0.01')),
                quantity=stock,
                reserved_quantity=0,
                available_quantity=stock,
                low_stock_threshold=random.randint(5, 15),
                is_active=random.random() > 0.05  # 95% active
            ))

        Product.objects.bulk_create(products, ignore_conflicts=True)
        self.stdout.write(f'  {store.name}: {store.products.count()} products')

    def _create_customers(self, store, count):
        from orders.models import Customer

        customers = [
            Customer(
                store=store,
                name=f"{random.choice(CUSTOMER_NAMES)} {chr(65 + i)}.",
                custom_id=f"C{store.pk:02d}{i + 1:04d}",
                phone=f"09{random.randint(100000000, 999999999)}",
            )
            for i in range(count)
        ]
        Customer.objects.bulk_create(customers)
        self.stdout.write(f'  {store.name}: {count} customers')
