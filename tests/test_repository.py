from datetime import datetime

import pytest
from sqlmodel import Session, select

from shop_billing.errors import NotFound, TransactionFailed
from shop_billing.models import Bill, BillItem, Stock, PENDING, COMPLETED
from shop_billing.repository import SqlCatalogStore, SqlUnitOfWork
from shop_billing.services import create_bill, delete_bill, update_bill

NOW = datetime(2024, 6, 15, 9, 0)


def _stock(session, product_id):
    session.expire_all()
    return session.exec(select(Stock).where(Stock.product_id == product_id)).one().quantity


def test_price_for_prefers_shop_override(session):
    cat = SqlCatalogStore(session)
    assert cat.price_for(1, 2) == 75.0
    assert cat.price_for(2, 2) == 80.0
    with pytest.raises(NotFound):
        cat.price_for(1, 99)


def test_adjust_stock_floors_at_zero(session):
    cat = SqlCatalogStore(session)
    assert cat.adjust_stock(2, -8) == 0.0
    assert cat.adjust_stock(2, 4) == 4.0
    with pytest.raises(NotFound):
        cat.adjust_stock(99, 1)


def test_low_stock_lists_rows_at_or_below_threshold(session):
    rows = SqlCatalogStore(session).low_stock(5)
    assert [(st.product_id, p.product_name) for st, p in rows] == [(3, "Paneer 200g"), (2, "Curd 1kg")]


def test_create_bill_persists_bill_items_and_stock(session):
    d = create_bill(SqlUnitOfWork(session), {
        "shopId": 1,
        "billDate": "2024-06-15T08:00:00Z",
        "receivedAmount": 100,
        "items": [
            {"productId": 1, "quantity": 2, "rate": 50, "sgst": 5, "cgst": 5},
            {"productId": 2, "quantity": -1, "rate": 75},
        ],
    }, user_id=1, now=NOW)
    assert d.bill.bill_number == "BILL202406150001"
    assert d.bill.total_amount == 35.0
    assert d.bill.status == COMPLETED
    assert d.shop.shop_name == "Lakshmi Stores"
    assert d.user.username == "billing"
    assert [(it.quantity, p.product_name) for it, p in d.items] == [(2, "Milk 500ml"), (-1, "Curd 1kg")]
    assert _stock(session, 1) == 8
    assert _stock(session, 2) == 5


def test_sequence_continues_within_the_day(session):
    for _ in range(2):
        create_bill(SqlUnitOfWork(session), {"shopId": 1, "items": [{"productId": 1, "quantity": 1, "rate": 1}]},
                    user_id=1, now=NOW)
    d = create_bill(SqlUnitOfWork(session), {"shopId": 1, "items": [{"productId": 1, "quantity": 1, "rate": 1}]},
                    user_id=1, now=NOW.replace(hour=23, minute=59))
    assert d.bill.bill_number == "BILL202406150003"


def test_stock_failure_on_second_line_rolls_back(engine, monkeypatch):
    calls = {"n": 0}
    original = SqlCatalogStore.set_stock_quantity

    def flaky(self, product_id, quantity):
        calls["n"] += 1
        if calls["n"] == 2:
            raise TransactionFailed(f"stock row for product {product_id} vanished")
        return original(self, product_id, quantity)

    monkeypatch.setattr(SqlCatalogStore, "set_stock_quantity", flaky)
    with Session(engine) as s:
        with pytest.raises(TransactionFailed):
            create_bill(SqlUnitOfWork(s), {"shopId": 1, "items": [
                {"productId": 1, "quantity": 1, "rate": 50},
                {"productId": 2, "quantity": 1, "rate": 75},
                {"productId": 3, "quantity": 1, "rate": 90},
            ]}, user_id=1, now=NOW)

    with Session(engine) as s:
        assert s.exec(select(Bill)).all() == []
        assert s.exec(select(BillItem)).all() == []
        assert _stock(s, 1) == 10
        assert _stock(s, 2) == 5


def test_duplicate_bill_number_is_an_integrity_failure(session):
    # same number already taken by a bill created on another day
    session.add(Bill(bill_number="BILL202406150001", shop_id=1, user_id=1,
                     created_at=datetime(2024, 6, 14), total_amount=10, pending_amount=10))
    session.commit()
    with pytest.raises(TransactionFailed):
        create_bill(SqlUnitOfWork(session), {"shopId": 1, "items": [{"productId": 1, "quantity": 1, "rate": 1}]},
                    user_id=1, now=NOW)
    assert session.exec(select(Bill)).all()[0].bill_number == "BILL202406150001"
    assert len(session.exec(select(Bill)).all()) == 1
    assert _stock(session, 1) == 10


def test_payment_bill_allocates_oldest_first(session):
    for day, total in [(5, 50), (1, 100)]:
        session.add(Bill(bill_number=f"OLD{day}", shop_id=1, user_id=1, bill_date=datetime(2024, 1, day),
                         created_at=datetime(2024, 1, day), total_amount=total, pending_amount=total))
    session.add(Bill(bill_number="OTHER", shop_id=2, user_id=1, bill_date=datetime(2023, 1, 1),
                     created_at=datetime(2023, 1, 1), total_amount=70, pending_amount=70))
    session.commit()

    create_bill(SqlUnitOfWork(session), {"shopId": 1, "receivedAmount": 120, "applyToPending": True},
                user_id=1, now=NOW)

    session.expire_all()
    rows = {b.bill_number: b for b in session.exec(select(Bill)).all()}
    assert (rows["OLD1"].status, rows["OLD1"].pending_amount) == (COMPLETED, 0.0)
    assert (rows["OLD5"].status, rows["OLD5"].pending_amount, rows["OLD5"].received_amount) == (PENDING, 30.0, 20.0)
    assert rows["OTHER"].pending_amount == 70.0
    assert rows["BILL202406150001"].received_amount == 120.0


def test_update_and_delete_round_trip(session):
    d = create_bill(SqlUnitOfWork(session), {"shopId": 1, "items": [{"productId": 1, "quantity": 4, "rate": 25}]},
                    user_id=1, now=NOW)
    bill_id = d.bill.id
    d = update_bill(SqlUnitOfWork(session), bill_id, {"receivedAmount": 60})
    assert (d.bill.pending_amount, d.bill.status) == (40.0, PENDING)
    assert _stock(session, 1) == 6

    delete_bill(SqlUnitOfWork(session), bill_id)
    assert session.get(Bill, bill_id) is None
    assert session.exec(select(BillItem).where(BillItem.bill_id == bill_id)).all() == []
    assert _stock(session, 1) == 10

    with pytest.raises(NotFound):
        delete_bill(SqlUnitOfWork(session), bill_id)


def test_list_page_searches_by_shop_name(session):
    create_bill(SqlUnitOfWork(session), {"shopId": 1, "notes": "morning round"}, user_id=1, now=NOW)
    create_bill(SqlUnitOfWork(session), {"shopId": 2}, user_id=1, now=NOW)
    uow = SqlUnitOfWork(session)
    rows, total = uow.bills.list_page(search="sri ram")
    assert total == 1
    assert rows[0].shop.shop_name == "Sri Ram Traders"
    rows, total = uow.bills.list_page(search="MORNING")
    assert total == 1
    rows, total = uow.bills.list_page(shop_id=1, limit=1)
    assert total == 1 and len(rows) == 1


def test_local_timestamps_round_trip_unchanged(engine):
    with Session(engine) as s:
        d = create_bill(SqlUnitOfWork(s), {"shopId": 1, "billDate": datetime(2024, 6, 14, 23, 30),
                                           "items": [{"productId": 1, "quantity": 1, "rate": 50}]},
                        user_id=1, now=NOW)
        bill_id = d.bill.id

    with Session(engine) as s:
        bill = s.get(Bill, bill_id)
        assert bill.created_at == NOW
        assert bill.created_at.tzinfo is None
        assert bill.bill_date == datetime(2024, 6, 14, 23, 30)
        stock = s.exec(select(Stock).where(Stock.product_id == 1)).one()
        assert stock.updated_at.tzinfo is None
        assert SqlUnitOfWork(s).bills.count_created_between(NOW.replace(hour=0), NOW.replace(hour=23, minute=59)) == 1
