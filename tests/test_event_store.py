import unittest
from decimal import Decimal

from moneybags import EventStore, DuplicateTransaction, EventError


class TestEventStore(unittest.TestCase):

    def test__put__entry_retrievable_by_tx_id(self):
        store = EventStore()
        store.put(7, 55, Decimal("1.23"))
        entry = store.get(7)
        self.assertEqual(55, entry.client_id)
        self.assertEqual(Decimal("1.23"), entry.amount)
        self.assertIn(7, store)
        self.assertEqual(1, len(store))

    def test__get_missing_tx__returns_none(self):
        store = EventStore()
        self.assertIsNone(store.get(7))
        self.assertNotIn(7, store)

    def test__put_existing_tx_id__first_write_wins(self):
        store = EventStore()
        store.put(7, 55, Decimal("1.23"))
        with self.assertRaises(DuplicateTransaction) as test_exc:
            store.put(7, 56, Decimal("9.99"))

        self.assertEqual(7, test_exc.exception.tx_id)
        self.assertEqual("tx_id 7 already recorded", str(test_exc.exception))
        self.assertEqual(55, store.get(7).client_id)
        self.assertEqual(Decimal("1.23"), store.get(7).amount)
        self.assertEqual(1, len(store))

    def test__duplicate_tx__not_an_event_failure(self):
        self.assertFalse(issubclass(DuplicateTransaction, EventError))

    def test__get__has_no_side_effects(self):
        store = EventStore()
        store.get(1)
        store.get(1)
        self.assertEqual(0, len(store))
