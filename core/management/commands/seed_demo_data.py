from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from menu.models import MenuItem
from shifts.services import get_active_shift, open_shift

MENU = [
    ("Nasi Goreng", "makanan", "20000"),
    ("Nasi Goreng Spesial", "makanan", "28000"),
    ("Nasi Goreng Seafood", "makanan", "32000"),
    ("Mie Goreng", "makanan", "18000"),
    ("Mie Kuah", "makanan", "18000"),
    ("Ayam Geprek", "makanan", "22000"),
    ("Ayam Bakar", "makanan", "27000"),
    ("Es Teh", "minuman", "5000"),
    ("Es Jeruk", "minuman", "8000"),
]


class Command(BaseCommand):
    help = "Seed demo users, menu items and an open cashier shift for local development."

    def _user(self, username, role, password, *, pin=None, **extra):
        User = get_user_model()
        user, created = User.objects.get_or_create(
            username=username,
            defaults={"email": f"{username}@example.com", "role": role, "is_active": True, **extra},
        )
        if created:
            user.set_password(password)
            if pin:
                user.set_approval_pin(pin)
            user.save(update_fields=["password", "approval_pin"])
        return user

    def handle(self, *args, **options):
        User = get_user_model()

        self._user("admin", User.Role.ADMIN, "admin1234", pin="9999", is_staff=True, is_superuser=True)
        self._user("supervisor", User.Role.SUPERVISOR, "supervisor1234", pin="1234")
        cashier = self._user("cashier", User.Role.CASHIER, "cashier1234")

        for name, category, price in MENU:
            MenuItem.objects.get_or_create(name=name, defaults={"category": category, "price": Decimal(price)})

        shift = get_active_shift(cashier) or open_shift(cashier, Decimal("500000"), notes="demo float")

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: admin/admin1234 (PIN 9999), supervisor/supervisor1234 (PIN 1234), cashier/cashier1234")
        self.stdout.write(f"Menu items: {MenuItem.objects.count()} | Active shift: {shift.id}")
