"""
Transaction engine tests.

Verifies:
- Posting writes header, items and one movement per item atomically
- Sale payment check and derived change
- Updates reverse old lines and post new ones under the same number
- Per-type, per-day numbering
- Failures leave no rows behind and consume no number
"""

import pytest

from conftest import line, txn_input
from stockledger.errors import (
    InsufficientPaymentError,
    NotConfiguredError,
    NotFoundError,
    StockWouldGoNegativeError,
    ValidationError,
)
from stockledger.models import ConversionLog, Product, StockEntry, Transaction, TransactionItem, TransactionSequence
from stockledger.services import conversion_service, stock_service, transaction_service
from stockledger.services.sequence_service import format_transaction_no
from stockledger.services.transaction_service import (
    create_transaction,
    get_transaction,
    list_transactions,
    update_transaction,
)
from stockledger.time_utils import today
from stockledger.validation import LineInput, TransactionInput


def _movements(db_session, txn_id):
    return (
        db_session.query(StockEntry)
        .filter_by(transaction_id=txn_id)
        .order_by(StockEntry.id.asc())
        .all()
    )


class TestCreate:

    def test_purchase_posts_items_and_movements(self, db_session, configured_product, pcs, box, user):
        txn = create_transaction(
            txn_input("purchase", [line(configured_product, box, 2), line(configured_product, pcs, 5)]),
            actor_user_id=user.id,
        )

        assert txn.no == format_transaction_no("PUR", today(), 1)
        assert txn.total_amount_cents == 2 * 900 + 5 * 80
        assert txn.created_by == user.id
        assert [i.description for i in txn.items] == ["Purchase of 2 box", "Purchase of 5 pcs"]
        assert [i.unit_factor for i in txn.items] == [12, 1]

        movements = _movements(db_session, txn.id)
        assert [(m.qty, m.base_qty, m.is_reversal) for m in movements] == [(2, 24, False), (5, 5, False)]
        assert all(m.description == f"Purchase transaction {txn.no}" for m in movements)

    def test_sale_derives_change(self, db_session, configured_product, pcs, user):
        create_transaction(txn_input("purchase", [line(configured_product, pcs, 10)]), actor_user_id=user.id)

        sale = create_transaction(
            txn_input(
                "sale",
                [line(configured_product, pcs, 3, description="Promo pack")],
                amount_paid_cents=500,
                payment_method="card",
            ),
            actor_user_id=user.id,
        )

        assert sale.total_amount_cents == 300
        assert sale.change_cents == 200
        assert sale.payment_method == "card"
        assert sale.items[0].description == "Promo pack"
        assert _movements(db_session, sale.id)[0].qty == -3

    def test_insufficient_payment(self, db_session, configured_product, pcs, user):
        create_transaction(txn_input("purchase", [line(configured_product, pcs, 100)]), actor_user_id=user.id)

        with pytest.raises(InsufficientPaymentError) as exc:
            create_transaction(
                txn_input("sale", [line(configured_product, pcs, 100)], amount_paid_cents=8000),
                actor_user_id=user.id,
            )

        assert exc.value.shortfall == 2000
        assert exc.value.details["shortfall_cents"] == 2000
        assert db_session.query(Transaction).filter_by(type="sale").count() == 0

    def test_adjustment_is_unpriced_and_signed(self, db_session, configured_product, pcs, box, user):
        create_transaction(txn_input("purchase", [line(configured_product, box, 1)]), actor_user_id=user.id)

        adj = create_transaction(
            txn_input("adjustment", [line(configured_product, pcs, -2), line(configured_product, box, 1)]),
            actor_user_id=user.id,
        )

        assert adj.total_amount_cents is None
        assert adj.description == "Stock count correction"
        assert [m.base_qty for m in _movements(db_session, adj.id)] == [-2, 12]
        assert stock_service.get_current_stock(configured_product.id)["quantity"] == 22

    def test_unconfigured_unit_rejected_before_writes(self, db_session, product, pcs, box, make_conversion, user):
        make_conversion(product, pcs, "purchase", 1, 80)

        with pytest.raises(NotConfiguredError):
            create_transaction(
                txn_input("purchase", [line(product, pcs, 1), line(product, box, 1)]),
                actor_user_id=user.id,
            )

        assert db_session.query(Transaction).count() == 0
        assert db_session.query(TransactionItem).count() == 0
        assert db_session.query(StockEntry).count() == 0
        assert db_session.query(TransactionSequence).count() == 0

    def test_inactive_product_rejected(self, db_session, configured_product, pcs, user):
        configured_product.is_active = False
        db_session.commit()

        with pytest.raises(ValidationError):
            create_transaction(txn_input("purchase", [line(configured_product, pcs, 1)]), actor_user_id=user.id)

    def test_failed_post_does_not_consume_number(self, db_session, configured_product, pcs, user):
        create_transaction(txn_input("purchase", [line(configured_product, pcs, 1)]), actor_user_id=user.id)
        with pytest.raises(InsufficientPaymentError):
            create_transaction(
                txn_input("sale", [line(configured_product, pcs, 1)], amount_paid_cents=0),
                actor_user_id=user.id,
            )

        sale = create_transaction(txn_input("sale", [line(configured_product, pcs, 1)]), actor_user_id=user.id)
        assert sale.no == format_transaction_no("SAL", today(), 1)

    def test_failure_after_header_rolls_back(self, db_session, configured_product, pcs, user, monkeypatch):
        create_transaction(txn_input("purchase", [line(configured_product, pcs, 10)]), actor_user_id=user.id)
        entries_before = db_session.query(StockEntry).count()

        def _fail(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(transaction_service, "_post_lines", _fail)
        with pytest.raises(RuntimeError):
            create_transaction(txn_input("sale", [line(configured_product, pcs, 3)]), actor_user_id=user.id)

        assert db_session.query(Transaction).filter_by(type="sale").count() == 0
        assert db_session.query(StockEntry).count() == entries_before
        assert stock_service.get_current_stock(configured_product.id)["quantity"] == 10

        monkeypatch.undo()
        sale = create_transaction(txn_input("sale", [line(configured_product, pcs, 3)]), actor_user_id=user.id)
        assert sale.no == format_transaction_no("SAL", today(), 1)

    def test_sale_without_amount_paid_rejected(self, db_session, configured_product, pcs, user):
        data = TransactionInput(
            type="sale",
            date=today(),
            lines=[LineInput(product_id=configured_product.id, unit_id=pcs.id, qty=1)],
            payment_method="cash",
        )

        with pytest.raises(ValidationError, match="amount_paid_cents is required"):
            create_transaction(data, actor_user_id=user.id)
        assert db_session.query(Transaction).count() == 0


class TestPurchasePriceOverride:

    def test_override_reprices_conversion_with_history(self, db_session, configured_product, box, user):
        txn = create_transaction(
            txn_input("purchase", [line(configured_product, box, 2, unit_price_cents=950)]),
            actor_user_id=user.id,
        )

        assert txn.total_amount_cents == 1900
        conversion = conversion_service.find_active_conversion(configured_product.id, box.id, "purchase")
        assert conversion.unit_price_cents == 950

        latest = (
            db_session.query(ConversionLog)
            .filter_by(conversion_id=conversion.id)
            .order_by(ConversionLog.id.desc())
            .first()
        )
        assert (latest.old_price_cents, latest.new_price_cents) == (900, 950)
        assert txn.no in latest.note

    def test_same_price_writes_no_history(self, db_session, configured_product, box, user):
        conversion = conversion_service.find_active_conversion(configured_product.id, box.id, "purchase")
        create_transaction(
            txn_input("purchase", [line(configured_product, box, 1, unit_price_cents=900)]),
            actor_user_id=user.id,
        )
        assert db_session.query(ConversionLog).filter_by(conversion_id=conversion.id).count() == 1


class TestUpdate:

    def test_sale_qty_change_reverses_then_reposts(self, db_session, configured_product, pcs, user):
        create_transaction(txn_input("purchase", [line(configured_product, pcs, 10)]), actor_user_id=user.id)
        sale = create_transaction(txn_input("sale", [line(configured_product, pcs, 6)]), actor_user_id=user.id)
        before = stock_service.get_base_stock(configured_product.id)

        updated = update_transaction(
            "sale", sale.id, txn_input("sale", [line(configured_product, pcs, 4)]), actor_user_id=user.id,
        )

        movements = _movements(db_session, sale.id)
        assert [(m.qty, m.is_reversal) for m in movements] == [(-6, False), (6, True), (-4, False)]
        assert movements[1].description == f"Reversal for updated sale: {sale.no}"
        assert movements[1].type == "sale"
        assert stock_service.get_base_stock(configured_product.id) - before == 2

        assert updated.id == sale.id
        assert updated.no == sale.no
        assert [i.qty for i in updated.items] == [4]
        assert updated.total_amount_cents == 400
        assert updated.updated_by == user.id

    def test_resubmitting_same_lines_is_a_no_op(self, db_session, configured_product, pcs, user):
        create_transaction(txn_input("purchase", [line(configured_product, pcs, 6)]), actor_user_id=user.id)
        sale = create_transaction(txn_input("sale", [line(configured_product, pcs, 6)]), actor_user_id=user.id)
        assert stock_service.get_base_stock(configured_product.id) == 0

        # Stock is 0; the Guard must credit the old lines back to accept this
        update_transaction("sale", sale.id, txn_input("sale", [line(configured_product, pcs, 6)]), actor_user_id=user.id)

        assert stock_service.get_base_stock(configured_product.id) == 0
        assert len(_movements(db_session, sale.id)) == 3

    def test_reversal_uses_recorded_factor(self, db_session, configured_product, pcs, box, user):
        purchase = create_transaction(txn_input("purchase", [line(configured_product, box, 1)]), actor_user_id=user.id)

        box_purchase = conversion_service.find_active_conversion(configured_product.id, box.id, "purchase")
        conversion_service.update_conversion(
            box_purchase.id,
            product_id=configured_product.id, unit_id=box.id, unit_qty=6,
            unit_price_cents=900, type="purchase",
        )

        update_transaction(
            "purchase", purchase.id, txn_input("purchase", [line(configured_product, box, 1)]), actor_user_id=user.id,
        )

        reversal = [m for m in _movements(db_session, purchase.id) if m.is_reversal]
        assert [(r.qty, r.unit_factor, r.base_qty) for r in reversal] == [(-1, 12, -12)]
        assert stock_service.get_base_stock(configured_product.id) == 6

    def test_purchase_update_guarded(self, db_session, configured_product, pcs, user):
        purchase = create_transaction(txn_input("purchase", [line(configured_product, pcs, 10)]), actor_user_id=user.id)
        create_transaction(txn_input("sale", [line(configured_product, pcs, 8)]), actor_user_id=user.id)

        with pytest.raises(StockWouldGoNegativeError):
            update_transaction(
                "purchase", purchase.id, txn_input("purchase", [line(configured_product, pcs, 5)]),
                actor_user_id=user.id,
            )
        assert stock_service.get_base_stock(configured_product.id) == 2
        assert len(_movements(db_session, purchase.id)) == 1

    def test_wrong_type_is_not_found(self, db_session, configured_product, pcs, user):
        purchase = create_transaction(txn_input("purchase", [line(configured_product, pcs, 1)]), actor_user_id=user.id)

        with pytest.raises(NotFoundError):
            update_transaction("sale", purchase.id, txn_input("sale", [line(configured_product, pcs, 1)]))
        with pytest.raises(NotFoundError):
            get_transaction("sale", purchase.id)

    def test_missing_is_not_found(self, db_session, configured_product, pcs):
        with pytest.raises(NotFoundError):
            update_transaction("purchase", 9999, txn_input("purchase", [line(configured_product, pcs, 1)]))

    def test_failure_after_reversal_rolls_back(self, db_session, configured_product, pcs, user, monkeypatch):
        create_transaction(txn_input("purchase", [line(configured_product, pcs, 20)]), actor_user_id=user.id)
        sale = create_transaction(txn_input("sale", [line(configured_product, pcs, 6)]), actor_user_id=user.id)
        sale_id = sale.id
        entries_before = db_session.query(StockEntry).count()

        def _fail(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(transaction_service, "_post_lines", _fail)
        with pytest.raises(RuntimeError):
            update_transaction(
                "sale", sale_id, txn_input("sale", [line(configured_product, pcs, 4)]), actor_user_id=user.id,
            )

        assert db_session.query(StockEntry).count() == entries_before
        assert db_session.query(StockEntry).filter_by(is_reversal=True).count() == 0
        items = db_session.query(TransactionItem).filter_by(transaction_id=sale_id).all()
        assert [i.qty for i in items] == [6]
        assert stock_service.get_current_stock(configured_product.id)["quantity"] == 14
        assert get_transaction("sale", sale_id).updated_by is None


class TestProductLocking:

    def _second_product(self, db_session, pcs, make_conversion):
        other = Product(name="Water 600ml", sku="WATER-600", base_unit_id=pcs.id)
        db_session.add(other)
        db_session.commit()
        make_conversion(other, pcs, "purchase", 1, 50, is_default=True)
        return other

    def _version(self, db_session, product_id):
        return db_session.get(Product, product_id, populate_existing=True).stock_version

    def test_posting_bumps_version_of_each_product(self, db_session, configured_product, pcs, make_conversion, user):
        other = self._second_product(db_session, pcs, make_conversion)
        cola_id, water_id = configured_product.id, other.id
        before = (self._version(db_session, cola_id), self._version(db_session, water_id))

        create_transaction(
            txn_input("purchase", [line(configured_product, pcs, 2), line(other, pcs, 3)]),
            actor_user_id=user.id,
        )

        assert self._version(db_session, cola_id) == before[0] + 1
        assert self._version(db_session, water_id) == before[1] + 1

    def test_update_bumps_products_only_in_old_lines(self, db_session, configured_product, pcs, make_conversion, user):
        other = self._second_product(db_session, pcs, make_conversion)
        cola_id, water_id = configured_product.id, other.id
        purchase = create_transaction(
            txn_input("purchase", [line(configured_product, pcs, 5), line(other, pcs, 5)]),
            actor_user_id=user.id,
        )
        before = (self._version(db_session, cola_id), self._version(db_session, water_id))

        update_transaction(
            "purchase", purchase.id, txn_input("purchase", [line(other, pcs, 2)]), actor_user_id=user.id,
        )

        assert self._version(db_session, cola_id) == before[0] + 1
        assert self._version(db_session, water_id) == before[1] + 1
        assert stock_service.get_base_stock(cola_id) == 0


class TestNumbering:

    def test_numbers_are_per_type_per_day(self, db_session, configured_product, pcs, user):
        p1 = create_transaction(txn_input("purchase", [line(configured_product, pcs, 5)]), actor_user_id=user.id)
        p2 = create_transaction(txn_input("purchase", [line(configured_product, pcs, 5)]), actor_user_id=user.id)
        s1 = create_transaction(txn_input("sale", [line(configured_product, pcs, 1)]), actor_user_id=user.id)
        a1 = create_transaction(txn_input("adjustment", [line(configured_product, pcs, 1)]), actor_user_id=user.id)

        day = today()
        assert [p1.no, p2.no, s1.no, a1.no] == [
            format_transaction_no("PUR", day, 1),
            format_transaction_no("PUR", day, 2),
            format_transaction_no("SAL", day, 1),
            format_transaction_no("ADJ", day, 1),
        ]

    def test_number_keyed_by_creation_day_not_business_date(self, db_session, configured_product, pcs, user):
        txn = create_transaction(
            txn_input("purchase", [line(configured_product, pcs, 1)], date="2020-01-15"),
            actor_user_id=user.id,
        )
        assert txn.date.isoformat() == "2020-01-15"
        assert txn.no == format_transaction_no("PUR", today(), 1)


class TestList:

    def test_filter_and_summaries(self, db_session, configured_product, pcs, box, user):
        create_transaction(txn_input("purchase", [line(configured_product, box, 1)]), actor_user_id=user.id)
        sale = create_transaction(txn_input("sale", [line(configured_product, pcs, 2)]), actor_user_id=user.id)

        result = list_transactions(type="sale")
        assert [t["no"] for t in result["data"]] == [sale.no]
        assert result["data"][0]["item_count"] == 1
        assert result["data"][0]["items_summary"] == "Cola 330ml (2 pcs)"
        assert result["data"][0]["created_by_name"] == "Store Clerk"

    def test_search_and_sort_by_no(self, db_session, configured_product, pcs, user):
        first = create_transaction(txn_input("purchase", [line(configured_product, pcs, 1)]), actor_user_id=user.id)
        second = create_transaction(txn_input("purchase", [line(configured_product, pcs, 1)]), actor_user_id=user.id)

        result = list_transactions(search="PUR-", sort_by="no", sort_order="asc")
        assert [t["id"] for t in result["data"]] == [first.id, second.id]

    def test_rejects_unknown_sort(self, db_session):
        with pytest.raises(ValidationError):
            list_transactions(sort_by="amount")
