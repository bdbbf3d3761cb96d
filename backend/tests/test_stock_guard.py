"""
Stock Guard tests.

The Guard aggregates per product in base units:
    resulting = current - old + new
and rejects any negative result before anything is written.
"""

import pytest

from conftest import line, txn_input
from stockledger.errors import StockWouldGoNegativeError
from stockledger.models import StockEntry, Transaction
from stockledger.services import stock_service
from stockledger.services.stock_guard import GuardLine, simulate
from stockledger.services.transaction_service import create_transaction


def _stock_up(product, unit, qty, user):
    return create_transaction(txn_input("purchase", [line(product, unit, qty)]), actor_user_id=user.id)


class TestSimulate:

    def test_negative_adjustment_rejected(self, db_session, configured_product, pcs, user):
        _stock_up(configured_product, pcs, 3, user)

        with pytest.raises(StockWouldGoNegativeError) as exc:
            simulate([GuardLine(product_id=configured_product.id, unit_id=pcs.id, base_delta=-5)])

        err = exc.value
        assert (err.current, err.delta, err.resulting) == (3, -5, -2)
        assert err.details["unit_name"] == "pcs"
        assert err.details["product_name"] == configured_product.name

    def test_lines_for_same_product_are_aggregated(self, db_session, configured_product, pcs, box, user):
        _stock_up(configured_product, box, 1, user)

        # 12 on hand: 10 pcs alone and 1 box alone would each pass, together they do not
        with pytest.raises(StockWouldGoNegativeError) as exc:
            simulate([
                GuardLine(product_id=configured_product.id, unit_id=pcs.id, base_delta=-10),
                GuardLine(product_id=configured_product.id, unit_id=box.id, base_delta=-12),
            ])
        assert exc.value.resulting == -10

    def test_existing_items_are_credited_back(self, db_session, configured_product, pcs, user):
        _stock_up(configured_product, pcs, 6, user)
        # A prior sale of 6 already left 0 on hand
        stock_service.append_stock_entry(
            product_id=configured_product.id, unit_id=pcs.id, qty=-6, unit_factor=1, type="sale",
        )
        db_session.commit()

        results = simulate(
            [GuardLine(product_id=configured_product.id, unit_id=pcs.id, base_delta=-6)],
            existing_items=[GuardLine(product_id=configured_product.id, unit_id=pcs.id, base_delta=-6)],
        )
        assert results == {configured_product.id: 0}

    def test_removed_product_checked_too(self, db_session, configured_product, pcs, user):
        _stock_up(configured_product, pcs, 5, user)

        # Reversing a purchase of 10 when only 5 remain
        with pytest.raises(StockWouldGoNegativeError):
            simulate(
                [],
                existing_items=[GuardLine(product_id=configured_product.id, unit_id=pcs.id, base_delta=10)],
            )

    def test_reports_in_default_sale_unit(self, db_session, product, box, make_conversion, user):
        make_conversion(product, box, "sale", 12, 1100, is_default=True)
        make_conversion(product, box, "purchase", 12, 900)
        _stock_up(product, box, 1, user)

        with pytest.raises(StockWouldGoNegativeError) as exc:
            simulate([GuardLine(product_id=product.id, unit_id=box.id, base_delta=-18)])
        assert exc.value.current == 1
        assert exc.value.delta == -1.5
        assert exc.value.resulting == -0.5
        assert exc.value.details["unit_name"] == "box"


class TestGuardInEngine:

    def test_rejected_adjustment_writes_nothing(self, db_session, configured_product, pcs, user):
        _stock_up(configured_product, pcs, 3, user)
        entries_before = db_session.query(StockEntry).count()

        with pytest.raises(StockWouldGoNegativeError) as exc:
            create_transaction(
                txn_input("adjustment", [line(configured_product, pcs, -5)]),
                actor_user_id=user.id,
            )

        assert (exc.value.current, exc.value.delta, exc.value.resulting) == (3, -5, -2)
        assert db_session.query(StockEntry).count() == entries_before
        assert db_session.query(Transaction).filter_by(type="adjustment").count() == 0
        assert stock_service.get_current_stock(configured_product.id)["quantity"] == 3

    def test_sale_beyond_stock_rejected(self, db_session, configured_product, pcs, box, user):
        _stock_up(configured_product, pcs, 10, user)
        with pytest.raises(StockWouldGoNegativeError):
            create_transaction(txn_input("sale", [line(configured_product, box, 1)]), actor_user_id=user.id)

    def test_purchase_create_is_not_guarded(self, db_session, configured_product, pcs, user):
        stock_service.append_stock_entry(
            product_id=configured_product.id, unit_id=pcs.id, qty=-4, unit_factor=1, type="adjustment",
        )
        db_session.commit()

        # Already negative; a purchase that does not fully cover it still posts
        create_transaction(txn_input("purchase", [line(configured_product, pcs, 1)]), actor_user_id=user.id)
        assert stock_service.get_current_stock(configured_product.id)["quantity"] == -3
