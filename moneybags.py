import argparse
import csv
import sys
from collections import namedtuple
from decimal import Decimal, ROUND_DOWN, InvalidOperation

DEPOSIT = "deposit"
WITHDRAWAL = "withdrawal"
DISPUTE = "dispute"
RESOLVE = "resolve"
CHARGEBACK = "chargeback"

EVENT_KINDS = (DEPOSIT, WITHDRAWAL, DISPUTE, RESOLVE, CHARGEBACK)
REFERENCEABLE_KINDS = frozenset({DEPOSIT, WITHDRAWAL})

Event = namedtuple("Event", ["kind", "client_id", "tx_id", "amount"])
StoredEvent = namedtuple("StoredEvent", ["client_id", "amount"])


def error_log(message, tx_id=None, client_id=None, record_type=None, amount=None):
    if tx_id is not None and client_id is not None and record_type is not None:
        formatted_prefix = f"tx_id {tx_id}, client_id {client_id}, failed to apply {record_type}"
        amount_detail = ""
        if amount:
            amount_detail = f" of ${amount}"
        print(f"{formatted_prefix}{amount_detail}: {message}", file=sys.stderr)
    else:
        print(f"transaction error: {message}", file=sys.stderr)


def notice_log(message):
    print(f"transaction notice: {message}", file=sys.stderr)


class LedgerError(Exception):
    pass


class InputError(LedgerError):
    """The input source could not be opened or read. Aborts the run."""


class EventError(LedgerError):
    """A single event could not be applied. The run carries on without it."""
    message = "event rejected"

    def __init__(self, event, message=None):
        self.event = event
        super().__init__(message or self.message)


class InsufficientFunds(EventError):
    message = "insufficient funds"


class UnknownTransaction(EventError):
    message = "tx not found"


class ClientMismatch(EventError):
    message = "tx client_id mismatch"


class AccountLocked(EventError):
    message = "account is locked"


class DuplicateTransaction(LedgerError):
    """A tx_id was already recorded in the event store. The stored entry is kept."""

    def __init__(self, tx_id):
        self.tx_id = tx_id
        super().__init__(f"tx_id {tx_id} already recorded")


class EventStore:
    """Deposits and withdrawals keyed by tx_id, so later disputes can find them.

    Entries are written once and never changed: the first event recorded for a
    tx_id wins.
    """

    def __init__(self):
        self.entries = {}

    def put(self, tx_id, client_id, amount):
        if tx_id in self.entries:
            raise DuplicateTransaction(tx_id)
        self.entries[tx_id] = StoredEvent(client_id, amount)

    def get(self, tx_id):
        return self.entries.get(tx_id)

    def __contains__(self, tx_id):
        return tx_id in self.entries

    def __len__(self):
        return len(self.entries)


def new_account():
    return {
        "available": Decimal(0),
        "held": Decimal(0),
        "total": Decimal(0),
        "locked": False,
    }


class LedgerEngine:
    """Applies events one at a time to per-client balances.

    Each event works on a copy of the client's account. The copy replaces the
    stored account only when the whole transition succeeds.
    """

    def __init__(self, event_store=None):
        self.account_totals = {}
        self.event_store = event_store if event_store is not None else EventStore()
        self.handlers = {
            DEPOSIT: self.process_deposit,
            WITHDRAWAL: self.process_withdrawal,
            DISPUTE: self.process_dispute,
            RESOLVE: self.process_resolve,
            CHARGEBACK: self.process_chargeback,
        }

    def get_client_record(self, client_id):
        if client_id not in self.account_totals:
            self.account_totals[client_id] = new_account()
        return self.account_totals[client_id]

    def apply(self, event):
        try:
            self.transition(event)
        finally:
            # disputes can reference a deposit or withdrawal even if it was rejected
            if event.kind in REFERENCEABLE_KINDS:
                self.register_event(event)

    def transition(self, event):
        handler = self.handlers.get(event.kind)
        if handler is None:
            raise ValueError(f"unknown event kind {event.kind!r}")

        client_accounting = dict(self.get_client_record(event.client_id))
        if client_accounting["locked"]:
            raise AccountLocked(event)

        handler(client_accounting, event)
        self.account_totals[event.client_id] = client_accounting

    def register_event(self, event):
        try:
            self.event_store.put(event.tx_id, event.client_id, event.amount)
        except DuplicateTransaction as e:
            notice_log(f"{event.kind} for client_id {event.client_id} reuses {e}, "
                       f"event store keeps the first entry")

    def get_referenced_tx(self, event):
        existing_tx = self.event_store.get(event.tx_id)
        if existing_tx is None:
            raise UnknownTransaction(event)
        if existing_tx.client_id != event.client_id:
            raise ClientMismatch(event)
        return existing_tx

    def process_deposit(self, client_accounting, event):
        client_accounting["available"] += event.amount
        client_accounting["total"] += event.amount

    def process_withdrawal(self, client_accounting, event):
        if client_accounting["available"] < event.amount:
            raise InsufficientFunds(event)

        client_accounting["available"] -= event.amount
        client_accounting["total"] -= event.amount

    def process_dispute(self, client_accounting, event):
        amount = self.get_referenced_tx(event).amount
        client_accounting["available"] -= amount
        client_accounting["held"] += amount

    def process_resolve(self, client_accounting, event):
        # held is not clamped at zero, resolving an undisputed tx leaves it negative
        amount = self.get_referenced_tx(event).amount
        client_accounting["available"] += amount
        client_accounting["held"] -= amount

    def process_chargeback(self, client_accounting, event):
        amount = self.get_referenced_tx(event).amount
        client_accounting["held"] -= amount
        client_accounting["total"] -= amount
        client_accounting["locked"] = True

    def log_event_error(self, error):
        event = error.event
        amount = format_amount(event.amount) if event.amount else None
        error_log(str(error), event.tx_id, event.client_id, event.kind, amount)

    def process_events(self, events):
        for event in events:
            try:
                self.apply(event)
            except EventError as e:
                self.log_event_error(e)
        return self.get_account_totals()

    def get_account_totals(self):
        return dict(sorted(self.account_totals.items()))


class TransactionReader:
    default_field_order = ("type", "client", "tx", "amount")
    required_fields = frozenset({"type", "client", "tx"})
    amount_precision = Decimal(".0001")
    max_id = 4294967295

    def __init__(self):
        self.set_field_order(self.default_field_order)

    def set_field_order(self, field_order):
        indexes = {name: idx for idx, name in enumerate(field_order)}
        self.type_field_idx = indexes["type"]
        self.client_field_idx = indexes["client"]
        self.tx_field_idx = indexes["tx"]
        self.amount_field_idx = indexes.get("amount")

    def discover_field_order(self, header):
        """Use the header row for column order. Returns False when the row is not a header."""
        field_order = [field.strip().lower() for field in header]
        if not self.required_fields.issubset(field_order):
            return False
        self.set_field_order(field_order)
        return True

    def read_events(self, file):
        csvreader = (record for record in csv.reader(file) if any(field.strip() for field in record))
        first_row = next(csvreader, None)
        if first_row is None:
            return

        if not self.discover_field_order(first_row):
            # no header: first row is data in the default order
            self.set_field_order(self.default_field_order)
            event = self.attempt_normalize_record(first_row)
            if event is not None:
                yield event

        for record in csvreader:
            event = self.attempt_normalize_record(record)
            if event is not None:
                yield event

    def attempt_normalize_record(self, record):
        try:
            return self.normalize_record(record)
        except (ValueError, InvalidOperation, IndexError) as e:
            error_log(f"field format error: {e!r} while attempting to normalize row like: {record!r}")
            return None

    def normalize_record(self, record):
        record_type = record[self.type_field_idx].strip().lower()
        if record_type not in EVENT_KINDS:
            raise ValueError(f"invalid record_type {record_type!r}")

        client_id = self.normalize_id(record[self.client_field_idx], "client_id")
        tx_id = self.normalize_id(record[self.tx_field_idx], "tx_id")

        raw_amount = ""
        if self.amount_field_idx is not None and self.amount_field_idx < len(record):
            raw_amount = record[self.amount_field_idx]

        amount = Decimal(0)
        if record_type in REFERENCEABLE_KINDS:
            amount = self.get_normalized_amount(raw_amount)

        return Event(record_type, client_id, tx_id, amount)

    def normalize_id(self, value, name):
        normalized = int(value.strip())
        if not (0 <= normalized <= self.max_id):
            raise ValueError(f"invalid {name} {normalized}")
        return normalized

    def get_normalized_amount(self, value):
        value = value.strip()
        if not value:
            return Decimal(0)
        amount = Decimal(value)
        if not amount.is_finite():
            raise ValueError(f"invalid amount {value!r}")
        if amount < 0:
            raise ValueError(f"negative amount {value!r}")
        truncated = amount.quantize(self.amount_precision, rounding=ROUND_DOWN)
        if truncated != amount:
            notice_log(f"amount {value} truncated to {truncated}")
        return truncated.normalize()


def format_amount(value):
    # normalize() alone would give exponents like 1E+2
    if not value:
        return "0"
    return f"{value.normalize():f}"


def write_account_totals(account_totals, out):
    csvwriter = csv.writer(out, lineterminator="\n")
    fieldnames = ["client", "available", "held", "total", "locked"]
    csvwriter.writerow(fieldnames)
    for client_id, client_accounting in sorted(account_totals.items()):
        csvwriter.writerow([
            client_id,
            format_amount(client_accounting["available"]),
            format_amount(client_accounting["held"]),
            format_amount(client_accounting["total"]),
            str(client_accounting["locked"]).lower(),
        ])


class Moneybags:
    def __init__(self, filename):
        self.filename = filename
        self.engine = LedgerEngine()
        self.reader = TransactionReader()

    def read_transaction_data(self):
        if not self.filename:
            raise RuntimeError("no filename to read has been set. aborting.")
        # every read starts from empty balances
        self.engine = LedgerEngine()
        try:
            with open(self.filename, newline="", encoding="utf-8") as file:
                self.engine.process_events(self.reader.read_events(file))
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise InputError(f"Unable to read file '{self.filename}': {e}") from e

    def get_account_totals(self):
        self.read_transaction_data()
        return self.engine.get_account_totals()

    def generate_output(self, out=None):
        account_totals = self.get_account_totals()
        write_account_totals(account_totals, out if out is not None else sys.stdout)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="moneybags",
        description="Processes the transactions in CSV_FILE and writes a CSV summary of the "
                    "resulting client accounts to stdout.",
    )
    parser.add_argument("csv_file", help="path to a CSV file of transaction records")
    args = parser.parse_args(argv)

    try:
        Moneybags(args.csv_file).generate_output()
    except InputError as e:
        print(e, file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
