from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select, col

from shop_billing.errors import NotFound, TransactionFailed
from shop_billing.models import (
    Bill, BillItem, Product, Shop, ShopProduct, Stock, User, PENDING,
)

logger = logging.getLogger(__name__)

BILL_SORT_KEYS = {
    "created_at": Bill.created_at,
    "bill_date": Bill.bill_date,
    "bill_number": Bill.bill_number,
    "total_amount": Bill.total_amount,
    "pending_amount": Bill.pending_amount,
    "status": Bill.status,
}


@dataclass
class BillDetail:
    bill: Bill
    shop: Optional[Shop] = None
    user: Optional[User] = None
    items: List[Tuple[BillItem, Optional[Product]]] = field(default_factory=list)


class CatalogStore(Protocol):
    def get_shop(self, shop_id: int) -> Optional[Shop]: ...

    def get_product(self, product_id: int) -> Optional[Product]: ...

    def price_for(self, shop_id: int, product_id: int) -> float: ...

    def stock_quantity(self, product_id: int) -> Optional[float]: ...

    def set_stock_quantity(self, product_id: int, quantity: float) -> None: ...

    def adjust_stock(self, product_id: int, delta: float) -> float: ...


class BillRepository(Protocol):
    def add(self, bill: Bill) -> Bill: ...

    def add_items(self, bill_id: int, items: Sequence[BillItem]) -> List[BillItem]: ...

    def get(self, bill_id: int, for_update: bool = False) -> Optional[Bill]: ...

    def items_for(self, bill_id: int) -> List[BillItem]: ...

    def save(self, bill: Bill) -> None: ...

    def delete(self, bill: Bill) -> None: ...

    def count_created_between(self, start: datetime, end: datetime) -> int: ...

    def pending_for_shop(self, shop_id: int) -> List[Bill]: ...

    def detail(self, bill_id: int) -> Optional[BillDetail]: ...


class UnitOfWork(Protocol):
    """One transaction shared by the catalog and the bill repository.

    Use as ``with uow: ...; uow.commit()``. Leaving the block without a
    commit rolls everything back.
    """

    catalog: CatalogStore
    bills: BillRepository

    def __enter__(self) -> "UnitOfWork": ...

    def __exit__(self, exc_type, exc, tb) -> None: ...

    def begin(self) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


# ---------------- SQLModel implementations ----------------
class SqlCatalogStore:
    def __init__(self, session: Session):
        self.session = session

    def get_shop(self, shop_id: int) -> Optional[Shop]:
        return self.session.get(Shop, shop_id)

    def get_product(self, product_id: int) -> Optional[Product]:
        return self.session.get(Product, product_id)

    def price_for(self, shop_id: int, product_id: int) -> float:
        sp = self.session.exec(
            select(ShopProduct).where(ShopProduct.shop_id == shop_id, ShopProduct.product_id == product_id)
        ).first()
        if sp:
            return sp.price
        product = self.get_product(product_id)
        if not product:
            raise NotFound("Product", product_id)
        return product.price

    def _stock_row(self, product_id: int) -> Optional[Stock]:
        return self.session.exec(
            select(Stock).where(Stock.product_id == product_id).with_for_update()
        ).first()

    def stock_quantity(self, product_id: int) -> Optional[float]:
        st = self._stock_row(product_id)
        return st.quantity if st else None

    def set_stock_quantity(self, product_id: int, quantity: float) -> None:
        st = self._stock_row(product_id)
        if not st:
            raise TransactionFailed(f"Stock row for product {product_id} vanished")
        st.quantity = quantity
        st.updated_at = datetime.now()
        self.session.add(st)
        self.session.flush()

    def adjust_stock(self, product_id: int, delta: float) -> float:
        st = self._stock_row(product_id)
        if not st:
            raise NotFound("Stock", product_id)
        st.quantity = max(0.0, st.quantity + delta)
        st.updated_at = datetime.now()
        self.session.add(st)
        self.session.flush()
        return st.quantity

    def low_stock(self, threshold: float = 10) -> List[Tuple[Stock, Optional[Product]]]:
        rows = self.session.exec(
            select(Stock).where(Stock.quantity <= threshold).order_by(Stock.quantity)
        ).all()
        return [(st, self.session.get(Product, st.product_id)) for st in rows]


class SqlBillRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, bill: Bill) -> Bill:
        self.session.add(bill)
        self.session.flush()
        return bill

    def add_items(self, bill_id: int, items: Sequence[BillItem]) -> List[BillItem]:
        for it in items:
            it.bill_id = bill_id
            self.session.add(it)
        self.session.flush()
        return list(items)

    def get(self, bill_id: int, for_update: bool = False) -> Optional[Bill]:
        stmt = select(Bill).where(Bill.id == bill_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.exec(stmt).first()

    def items_for(self, bill_id: int) -> List[BillItem]:
        return list(self.session.exec(
            select(BillItem).where(BillItem.bill_id == bill_id).order_by(BillItem.id)
        ).all())

    def save(self, bill: Bill) -> None:
        self.session.add(bill)
        self.session.flush()

    def delete(self, bill: Bill) -> None:
        for it in self.items_for(bill.id):
            self.session.delete(it)
        self.session.delete(bill)
        self.session.flush()

    def count_created_between(self, start: datetime, end: datetime) -> int:
        return self.session.exec(
            select(func.count()).select_from(Bill).where(Bill.created_at >= start, Bill.created_at < end)
        ).one()

    def pending_for_shop(self, shop_id: int) -> List[Bill]:
        return list(self.session.exec(
            select(Bill)
            .where(Bill.shop_id == shop_id, Bill.status == PENDING)
            .order_by(Bill.bill_date, Bill.id)
            .with_for_update()
        ).all())

    def detail(self, bill_id: int) -> Optional[BillDetail]:
        bill = self.session.get(Bill, bill_id)
        if not bill:
            return None
        return self._detail(bill)

    def _detail(self, bill: Bill) -> BillDetail:
        items = [(it, self.session.get(Product, it.product_id)) for it in self.items_for(bill.id)]
        return BillDetail(
            bill=bill,
            shop=self.session.get(Shop, bill.shop_id),
            user=self.session.get(User, bill.user_id),
            items=items,
        )

    # ---- read-only listings ----
    def list_page(
        self,
        page: int = 1,
        limit: int = 10,
        search: str = "",
        sort_by: str = "created_at",
        sort_order: str = "desc",
        shop_id: Optional[int] = None,
    ) -> Tuple[List[BillDetail], int]:
        stmt = select(Bill)
        count_stmt = select(func.count()).select_from(Bill)
        if shop_id is not None:
            stmt = stmt.where(Bill.shop_id == shop_id)
            count_stmt = count_stmt.where(Bill.shop_id == shop_id)
        if search:
            like = f"%{search}%"
            cond = or_(
                col(Bill.bill_number).ilike(like),
                col(Bill.notes).ilike(like),
                col(Bill.shop_id).in_(select(Shop.id).where(col(Shop.shop_name).ilike(like))),
            )
            stmt = stmt.where(cond)
            count_stmt = count_stmt.where(cond)

        if sort_by == "shop_name":
            stmt = stmt.join(Shop, Shop.id == Bill.shop_id)
            key = col(Shop.shop_name)
        else:
            key = col(BILL_SORT_KEYS.get(sort_by, Bill.created_at))
        stmt = stmt.order_by(key.asc() if sort_order == "asc" else key.desc(), col(Bill.id).desc())

        total = self.session.exec(count_stmt).one()
        rows = self.session.exec(stmt.offset((page - 1) * limit).limit(limit)).all()
        return [self._detail(b) for b in rows], total

    def list_pending(self) -> List[BillDetail]:
        rows = self.session.exec(
            select(Bill).where(Bill.status == PENDING).order_by(col(Bill.created_at).desc())
        ).all()
        return [self._detail(b) for b in rows]


class SqlUnitOfWork:
    def __init__(self, session: Session):
        self.session = session
        self.catalog = SqlCatalogStore(session)
        self.bills = SqlBillRepository(session)

    def __enter__(self) -> "SqlUnitOfWork":
        self.begin()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        # no-op after a successful commit
        self.rollback()
        if isinstance(exc, SQLAlchemyError):
            logger.error("transaction rolled back: %s", exc)
            raise TransactionFailed(str(getattr(exc, "orig", None) or exc)) from exc

    def begin(self) -> None:
        if not self.session.in_transaction():
            self.session.begin()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
