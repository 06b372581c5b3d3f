from decimal import Decimal

from django.test import TestCase

from common import errors
from menu.models import MenuItem
from menu.services import price_items


class PriceItemsTests(TestCase):
    def setUp(self):
        self.nasi = MenuItem.objects.create(name="Nasi Goreng", price=Decimal("20000.00"))
        self.hidden = MenuItem.objects.create(name="Mie Kuah", price=Decimal("18000.00"), is_available=False)

    def test_prices_come_from_menu(self):
        priced = price_items([{"menu_item": str(self.nasi.id), "quantity": "2", "note": "  pedas  ", "unit_price": "1"}])

        self.assertEqual(len(priced), 1)
        self.assertEqual(priced[0].unit_price, Decimal("20000.00"))
        self.assertEqual(priced[0].quantity, 2)
        self.assertEqual(priced[0].note, "pedas")

    def test_rejects_bad_input(self):
        cases = [
            [],
            [{"menu_item": self.nasi.id, "quantity": 0}],
            [{"menu_item": self.nasi.id, "quantity": "two"}],
            [{"menu_item": self.hidden.id, "quantity": 1}],
            [{"menu_item": "not-a-uuid", "quantity": 1}],
        ]
        for items in cases:
            with self.subTest(items=items):
                with self.assertRaises(errors.ValidationError):
                    price_items(items)
