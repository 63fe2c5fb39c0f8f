from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from shop_billing.errors import NotFound, ValidationFailed
from shop_billing.models import Bill, BillItem, CANCELLED
from shop_billing.money import round2, clamp_pending, derive_status
from shop_billing.repository import BillDetail, BillRepository, CatalogStore, UnitOfWork
from shop_billing.schemas import (
    BillItemIn, CreateBillRequest, UpdateBillRequest, validate_request,
)

logger = logging.getLogger(__name__)


@dataclass
class PricedBill:
    items: List[BillItem]
    total_amount: float


@dataclass
class AppliedPayment:
    bill_id: int
    applied_amount: float
    new_status: str


@dataclass
class Allocation:
    applied: List[AppliedPayment] = field(default_factory=list)
    remainder: float = 0.0


# ---------------- Numbering ----------------
def day_window(ref: datetime) -> Tuple[datetime, datetime]:
    start = datetime(ref.year, ref.month, ref.day)
    return start, start + timedelta(days=1)


def next_bill_number(bills: BillRepository, reference: Optional[datetime] = None) -> str:
    # BILLYYYYMMDD0001: count of bills created that day + 1.
    # Two creations racing on the same day can read the same count; the unique
    # bill_number column turns that into an integrity failure.
    ref = reference or datetime.now()
    start, end = day_window(ref)
    n = bills.count_created_between(start, end) + 1
    return f"BILL{ref.strftime('%Y%m%d')}{str(n).zfill(4)}"


# ---------------- Line items ----------------
def line_tax(amount: float, gst_percent: float) -> Tuple[float, float]:
    """Split GST on a sale line into (sgst, cgst). Returns carry no tax."""
    if amount <= 0 or not gst_percent:
        return 0.0, 0.0
    half = round2(amount * gst_percent / 100.0 / 2)
    return half, half


def price_items(
    raw_items: Sequence[BillItemIn],
    gst_lookup: Optional[Callable[[int], float]] = None,
) -> PricedBill:
    """Turn requested lines into BillItem rows and a bill total.

    sgst/cgst are taken as supplied. ``gst_lookup`` (product id -> GST %) is
    only for previews: it fills tax on sale lines that came without any.
    """
    total = 0.0
    items = []
    for raw in raw_items:
        amount = round2(raw.quantity * raw.rate)
        if raw.quantity > 0:
            sgst, cgst = round2(raw.sgst or 0), round2(raw.cgst or 0)
            if gst_lookup is not None and raw.sgst is None and raw.cgst is None:
                sgst, cgst = line_tax(amount, gst_lookup(raw.product_id))
        else:
            sgst = cgst = 0.0
        total = round2(total + amount + sgst + cgst)
        items.append(
            BillItem(
                product_id=raw.product_id,
                quantity=raw.quantity,
                rate=raw.rate,
                amount=amount,
                sgst=sgst,
                cgst=cgst,
            )
        )
    return PricedBill(items=items, total_amount=total)


def preview_bill(catalog: CatalogStore, shop_id: int, raw_items: Sequence[dict]) -> PricedBill:
    """Price lines for display; rate falls back to the shop's price for the product."""
    lines = []
    errors = []
    for i, raw in enumerate(raw_items):
        raw = dict(raw)
        pid = raw.get("productId", raw.get("product_id"))
        product = catalog.get_product(pid) if isinstance(pid, int) else None
        if not product:
            errors.append(f"items.{i}.productId: product {pid} does not exist")
            continue
        if raw.get("rate") is None:
            raw["rate"] = catalog.price_for(shop_id, pid)
        lines.append(raw)
    if errors:
        raise ValidationFailed(errors)
    req = validate_request(CreateBillRequest, {"shopId": shop_id, "items": lines})

    def gst_for(product_id: int) -> float:
        return catalog.get_product(product_id).gst

    return price_items(req.items, gst_lookup=gst_for)


# ---------------- Allocation ----------------
def allocate_payment(uow: UnitOfWork, shop_id: int, amount: float) -> Allocation:
    """Settle a shop's PENDING bills oldest bill_date first.

    Runs inside the caller's unit of work; does not commit. Whatever is left
    once every pending bill is settled is returned as ``remainder`` and not
    stored anywhere.
    """
    remaining = round2(amount)
    result = Allocation()
    for bill in uow.bills.pending_for_shop(shop_id):
        if remaining <= 0:
            break
        # a PENDING bill with nothing left owing takes 0 and is closed
        applied = max(0.0, round2(min(remaining, bill.pending_amount)))
        bill.received_amount = round2(bill.received_amount + applied)
        bill.pending_amount = max(0.0, round2(bill.pending_amount - applied))
        bill.status = derive_status(bill.pending_amount, bill.status)
        uow.bills.save(bill)
        remaining = round2(remaining - applied)
        result.applied.append(AppliedPayment(bill.id, applied, bill.status))
        logger.info("applied %.2f to bill %s, new status %s", applied, bill.id, bill.status)

    result.remainder = max(0.0, remaining)
    if result.remainder > 0:
        logger.warning("shop %s: %.2f of payment left unallocated", shop_id, result.remainder)
    return result


# ---------------- Stock ----------------
def _deduct_stock(catalog: CatalogStore, product_id: int, quantity: float):
    current = catalog.stock_quantity(product_id)
    if current is None:
        logger.warning("no stock row for product %s, skipping deduction of %s", product_id, quantity)
        return
    catalog.set_stock_quantity(product_id, max(0.0, current - quantity))


def _restore_stock(catalog: CatalogStore, product_id: int, quantity: float):
    current = catalog.stock_quantity(product_id)
    if current is None:
        return
    catalog.set_stock_quantity(product_id, max(0.0, current + quantity))


def _naive_local(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is not None:
        return dt.astimezone().replace(tzinfo=None)
    return dt


# ---------------- Orchestrator ----------------
def create_bill(uow: UnitOfWork, request, user_id: int, now: Optional[datetime] = None) -> BillDetail:
    req = validate_request(CreateBillRequest, request)
    now = now or datetime.now()

    with uow:
        errors = []
        if not uow.catalog.get_shop(req.shop_id):
            errors.append(f"shopId: shop {req.shop_id} does not exist")
        for i, it in enumerate(req.items):
            if not uow.catalog.get_product(it.product_id):
                errors.append(f"items.{i}.productId: product {it.product_id} does not exist")
        if errors:
            raise ValidationFailed(errors)

        bill_number = next_bill_number(uow.bills, now)
        priced = price_items(req.items)
        received = round2(req.received_amount or 0)
        pending = clamp_pending(priced.total_amount, received)

        bill = uow.bills.add(
            Bill(
                bill_number=bill_number,
                shop_id=req.shop_id,
                user_id=user_id,
                bill_date=_naive_local(req.bill_date) or now,
                total_amount=priced.total_amount,
                received_amount=received,
                pending_amount=pending,
                status=derive_status(pending),
                notes=req.notes,
                created_at=now,
            )
        )
        bill_id = bill.id
        logger.info("bill %s created as %s for shop %s", bill_id, bill_number, req.shop_id)

        if not req.items and received > 0:
            if req.apply_to_pending:
                logger.info("applying payment of %.2f to pending bills of shop %s", received, req.shop_id)
                allocate_payment(uow, req.shop_id, received)
            else:
                logger.info("payment bill %s recorded without touching pending bills", bill_id)
        elif priced.items:
            uow.bills.add_items(bill_id, priced.items)
            for it in priced.items:
                # returns are wastage and never go back on the shelf
                if it.quantity > 0:
                    _deduct_stock(uow.catalog, it.product_id, it.quantity)

        uow.commit()

    return uow.bills.detail(bill_id)


def update_bill(uow: UnitOfWork, bill_id: int, request) -> BillDetail:
    req = validate_request(UpdateBillRequest, request)

    with uow:
        bill = uow.bills.get(bill_id, for_update=True)
        if not bill:
            raise NotFound("Bill", bill_id)
        was_cancelled = bill.status == CANCELLED

        if req.notes is not None:
            bill.notes = req.notes
        if req.status is not None:
            bill.status = req.status
        if req.received_amount is not None:
            bill.received_amount = round2(req.received_amount)
            bill.pending_amount = clamp_pending(bill.total_amount, bill.received_amount)
            if not was_cancelled:
                bill.status = derive_status(bill.pending_amount)

        uow.bills.save(bill)
        uow.commit()
        logger.info("bill %s updated", bill_id)

    return uow.bills.detail(bill_id)


def delete_bill(uow: UnitOfWork, bill_id: int) -> None:
    with uow:
        bill = uow.bills.get(bill_id, for_update=True)
        if not bill:
            raise NotFound("Bill", bill_id)
        for it in uow.bills.items_for(bill_id):
            _restore_stock(uow.catalog, it.product_id, it.quantity)
        uow.bills.delete(bill)
        uow.commit()
    logger.info("bill %s deleted, stock restored", bill_id)
