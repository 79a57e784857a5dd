"""
Order and purchasing rules that move product stock.

Placing an order, cancelling one, and receiving or reversing a purchase
invoice each change several documents at once; those writes run inside a
single ``transaction()`` so product stock never disagrees with order and
invoice state.
"""
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import HTTPException

from auth import is_admin
from database import create_document, db, find_by_id, transaction, utcnow
from schemas import Order as OrderSchema
from schemas import OrderItem, PaymentResult, PurchaseInvoiceItem, ShippingAddress
from schemas import PurchaseInvoice as PurchaseInvoiceSchema

logger = logging.getLogger(__name__)

ORDER_FLOW = ["pending", "processing", "shipped", "delivered"]
ORDER_STATUSES = ORDER_FLOW + ["cancelled"]
TERMINAL_STATUSES = {"delivered", "cancelled"}


def next_number(collection_name: str, prefix: str, session=None) -> str:
    count = db[collection_name].count_documents({}, session=session)
    return f"{prefix}-{int(time.time() * 1000)}-{count + 1}"


def _requested_quantities(items: List[Dict[str, Any]]) -> "OrderedDict[str, int]":
    totals: "OrderedDict[str, int]" = OrderedDict()
    for item in items:
        totals[item["product_id"]] = totals.get(item["product_id"], 0) + item["quantity"]
    return totals


def _load_orderable_products(items: List[Dict[str, Any]], session=None) -> Dict[str, Dict[str, Any]]:
    products = {}
    for product_id, quantity in _requested_quantities(items).items():
        if not ObjectId.is_valid(product_id):
            raise HTTPException(status_code=404, detail=f"Product not found: {product_id}")
        product = db["product"].find_one({"_id": ObjectId(product_id)}, session=session)
        if not product or product.get("is_deleted"):
            raise HTTPException(status_code=404, detail=f"Product not found: {product_id}")
        if not product.get("is_active", True):
            raise HTTPException(status_code=400, detail=f"Product is not available: {product['name']}")
        if product.get("stock", 0) < quantity:
            raise HTTPException(
                status_code=400,
                detail=f"Insufficient stock for {product['name']}. Available: {product.get('stock', 0)}",
            )
        products[product_id] = product
    return products


def place_order(
    user: dict,
    items: List[Dict[str, Any]],
    shipping_address: ShippingAddress,
    payment_method: str,
    shipping_cost: float = 0,
    tax_amount: float = 0,
) -> str:
    """
    Check out ``items`` for ``user`` and return the new order id.

    Every product must exist, be active and hold enough stock for the summed
    quantity requested. Stock decrements, the order insert and the cart clear
    commit together or not at all.
    """
    if not items:
        raise HTTPException(status_code=400, detail="No order items")

    user_id = str(user["_id"])
    with transaction() as session:
        products = _load_orderable_products(items, session=session)
        now = utcnow()
        subtotal = 0.0
        order_items = []
        for item in items:
            product = products[item["product_id"]]
            quantity = item["quantity"]
            result = db["product"].update_one(
                {"_id": product["_id"], "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}, "$set": {"updated_at": now}},
                session=session,
            )
            if result.matched_count == 0:
                raise HTTPException(status_code=400, detail=f"Insufficient stock for {product['name']}")

            total_price = product["price"] * quantity
            subtotal += total_price
            images = product.get("images") or []
            order_items.append(OrderItem(
                product_id=item["product_id"],
                name=product["name"],
                image=images[0] if images else "",
                quantity=quantity,
                price=product["price"],
                total_price=total_price,
            ))

        order = OrderSchema(
            order_number=next_number("order", "ORD", session=session),
            user_id=user_id,
            items=order_items,
            shipping_address=shipping_address,
            payment_method=payment_method,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            tax_amount=tax_amount,
            total_amount=subtotal + shipping_cost + tax_amount,
        )
        order_id = create_document("order", order, session=session)
        db["cart"].update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "total_price": 0, "updated_at": now}},
            session=session,
        )

    logger.info("Order %s placed by %s (%d items)", order.order_number, user_id, len(order_items))
    return order_id


def get_order_for(order_id: str, user: dict, action: str = "view") -> Dict[str, Any]:
    order = find_by_id("order", order_id, "Order")
    if order["user_id"] != str(user["_id"]) and not is_admin(user):
        raise HTTPException(status_code=403, detail=f"Not authorized to {action} this order")
    return order


def _cancel_and_restock(order: Dict[str, Any]):
    now = utcnow()
    with transaction() as session:
        result = db["order"].update_one(
            {"_id": order["_id"], "order_status": order["order_status"]},
            {"$set": {"order_status": "cancelled", "updated_at": now}},
            session=session,
        )
        if result.matched_count == 0:
            raise HTTPException(status_code=400, detail="Order status changed, please retry")
        for item in order["items"]:
            db["product"].update_one(
                {"_id": ObjectId(item["product_id"])},
                {"$inc": {"stock": item["quantity"]}, "$set": {"updated_at": now}},
                session=session,
            )
    logger.info("Order %s cancelled, stock restored for %d items", order["_id"], len(order["items"]))


def update_order_status(order_id: str, status: str) -> Dict[str, Any]:
    """Admin status change; only forward moves, or cancellation from a live state"""
    if status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid order status")

    order = find_by_id("order", order_id, "Order")
    current = order["order_status"]
    if current == status:
        return order
    if current in TERMINAL_STATUSES:
        raise HTTPException(status_code=400, detail=f"Cannot change status of {current} order")

    if status == "cancelled":
        _cancel_and_restock(order)
    else:
        if ORDER_FLOW.index(status) < ORDER_FLOW.index(current):
            raise HTTPException(status_code=400, detail=f"Cannot move order from {current} back to {status}")
        now = utcnow()
        updates: Dict[str, Any] = {"order_status": status, "updated_at": now}
        if status == "delivered":
            updates["is_delivered"] = True
            updates["delivered_at"] = now
        db["order"].update_one({"_id": order["_id"]}, {"$set": updates})

    return db["order"].find_one({"_id": order["_id"]})


def mark_order_paid(order_id: str, user: dict, payment_result: PaymentResult) -> Dict[str, Any]:
    order = get_order_for(order_id, user, action="update")
    if order.get("is_paid"):
        raise HTTPException(status_code=400, detail="Order is already paid")
    if order["order_status"] == "cancelled":
        raise HTTPException(status_code=400, detail="Cannot pay for a cancelled order")

    updates: Dict[str, Any] = {
        "is_paid": True,
        "paid_at": utcnow(),
        "payment_result": payment_result.model_dump(),
        "updated_at": utcnow(),
    }
    if order["order_status"] == "pending":
        updates["order_status"] = "processing"
    result = db["order"].update_one({"_id": order["_id"], "is_paid": False}, {"$set": updates})
    if result.matched_count == 0:
        raise HTTPException(status_code=400, detail="Order is already paid")
    return db["order"].find_one({"_id": order["_id"]})


def cancel_order(order_id: str, user: dict) -> Dict[str, Any]:
    """Owner or admin cancellation; anything already shipped has to go through support"""
    order = get_order_for(order_id, user, action="cancel")
    status = order["order_status"]
    if status == "delivered":
        raise HTTPException(status_code=400, detail="Cannot cancel delivered order")
    if status == "cancelled":
        raise HTTPException(status_code=400, detail="Order is already cancelled")
    if status == "shipped":
        raise HTTPException(status_code=400, detail="Cannot cancel shipped order. Please contact support.")

    _cancel_and_restock(order)
    return db["order"].find_one({"_id": order["_id"]})


# Purchase invoices
def split_known_products(product_ids: List[str], session=None) -> Dict[str, List[str]]:
    """Partition ids into those present in the catalog and those that are not"""
    valid: List[str] = []
    missing: List[str] = []
    for product_id in dict.fromkeys(product_ids):
        product = None
        if ObjectId.is_valid(product_id):
            product = db["product"].find_one(
                {"_id": ObjectId(product_id), "is_deleted": {"$ne": True}}, {"_id": 1}, session=session
            )
        (valid if product else missing).append(product_id)
    return {"valid": valid, "missing": missing}


def create_purchase_invoice(
    user: dict,
    supplier_id: str,
    items: List[Dict[str, Any]],
    shipping_cost: float = 0,
    tax_amount: float = 0,
) -> str:
    """
    Receive stock from a supplier and return the new invoice id.

    Suppliers can only restock products already in the catalog; any unknown
    id rejects the whole invoice with the offending ids listed.
    """
    if not items:
        raise HTTPException(status_code=400, detail="No items provided")
    find_by_id("supplier", supplier_id, "Supplier")

    with transaction() as session:
        known = split_known_products([item["product_id"] for item in items], session=session)
        if known["missing"]:
            raise HTTPException(
                status_code=400,
                detail={
                    "message": "Some products do not exist in the catalog",
                    "missing_product_ids": known["missing"],
                },
            )

        now = utcnow()
        subtotal = 0.0
        invoice_items = []
        for item in items:
            db["product"].update_one(
                {"_id": ObjectId(item["product_id"])},
                {"$inc": {"stock": item["quantity"]}, "$set": {"updated_at": now}},
                session=session,
            )
            total_price = item["quantity"] * item["unit_price"]
            subtotal += total_price
            invoice_items.append(PurchaseInvoiceItem(
                product_id=item["product_id"],
                quantity=item["quantity"],
                unit_price=item["unit_price"],
                total_price=total_price,
            ))

        invoice = PurchaseInvoiceSchema(
            invoice_number=next_number("purchaseinvoice", "PI", session=session),
            supplier_id=supplier_id,
            received_by=str(user["_id"]),
            items=invoice_items,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            tax_amount=tax_amount,
            total_amount=subtotal + shipping_cost + tax_amount,
        )
        invoice_id = create_document("purchaseinvoice", invoice, session=session)

    logger.info("Purchase invoice %s received from supplier %s", invoice.invoice_number, supplier_id)
    return invoice_id


def cancel_purchase_invoice(invoice_id: str, restore_stock: bool = True) -> Optional[List[Dict[str, Any]]]:
    """
    Delete an invoice, optionally taking back the stock it added.

    Reversals clamp at zero since some of the received units may already be
    sold. Returns the per-product stock adjustments when stock was restored.
    """
    invoice = find_by_id("purchaseinvoice", invoice_id, "Purchase invoice")
    if not restore_stock:
        db["purchaseinvoice"].delete_one({"_id": invoice["_id"]})
        return None

    adjustments = []
    with transaction() as session:
        now = utcnow()
        for item in invoice["items"]:
            product = db["product"].find_one({"_id": ObjectId(item["product_id"])}, {"stock": 1}, session=session)
            if not product:
                continue
            current = product.get("stock", 0)
            new_stock = max(0, current - item["quantity"])
            db["product"].update_one(
                {"_id": product["_id"]},
                {"$set": {"stock": new_stock, "updated_at": now}},
                session=session,
            )
            adjustments.append({"product_id": item["product_id"], "previous_stock": current, "new_stock": new_stock})
        db["purchaseinvoice"].delete_one({"_id": invoice["_id"]}, session=session)

    logger.info("Purchase invoice %s cancelled, %d products adjusted", invoice["invoice_number"], len(adjustments))
    return adjustments
