import logging
import math
import os
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import inventory
from auth import (
    MIN_PASSWORD_LENGTH,
    authenticate,
    clear_auth_cookie,
    create_token,
    get_current_user,
    hash_password,
    is_admin,
    public_user,
    require_admin,
    require_self_or_admin,
    set_auth_cookie,
    verify_password,
)
from database import (
    create_document,
    db,
    ensure_indexes,
    find_by_id,
    get_documents,
    populate,
    serialize_doc,
    to_object_id,
    utcnow,
)
from schemas import Address, PaymentResult, ShippingAddress
from schemas import Brand as BrandSchema
from schemas import Cart as CartSchema
from schemas import Category as CategorySchema
from schemas import Favourite as FavouriteSchema
from schemas import Product as ProductSchema
from schemas import Review as ReviewSchema
from schemas import Supplier as SupplierSchema
from schemas import User as UserSchema

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

API = "/api/v1"

# App init
app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CLIENT_URL", "*").split(",")],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "Cookie"],
)


# Error handlers
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    content = exc.detail if isinstance(exc.detail, dict) else {"message": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"message": "Invalid request data", "error": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=400, content={"message": "Duplicate value", "error": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error.", "error": str(exc)})


@app.on_event("startup")
def create_indexes():
    if db is not None:
        ensure_indexes()


# Request models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str
    phone: Optional[str] = None
    address: Optional[Address] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


class PasswordUpdateRequest(BaseModel):
    current_password: str
    new_password: str


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category_id: str
    brand_id: str
    supplier_id: Optional[str] = None
    stock: int = Field(0, ge=0)
    images: List[str] = []
    is_featured: bool = False


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category_id: Optional[str] = None
    brand_id: Optional[str] = None
    supplier_id: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None


class StockUpdateRequest(BaseModel):
    quantity: int = Field(..., ge=1)
    operation: Literal["add", "subtract"]


class CartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CartQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderCreateRequest(BaseModel):
    items: List[OrderItemRequest]
    shipping_address: ShippingAddress
    payment_method: str = Field(..., min_length=1)
    shipping_cost: float = Field(0, ge=0)
    tax_amount: float = Field(0, ge=0)


class OrderStatusRequest(BaseModel):
    status: str


class InvoiceItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)


class PurchaseInvoiceCreateRequest(BaseModel):
    supplier_id: str
    items: List[InvoiceItemRequest]
    shipping_cost: float = Field(0, ge=0)
    tax_amount: float = Field(0, ge=0)


class ProductIdsRequest(BaseModel):
    product_ids: List[str]


class ReviewCreateRequest(BaseModel):
    rating: int
    comment: str = Field(..., min_length=1)


class ReviewUpdateRequest(BaseModel):
    rating: Optional[int] = None
    comment: Optional[str] = None


class ReviewIdsRequest(BaseModel):
    review_ids: List[str]


# Response shaping
PRODUCT_CARD_FIELDS = ["name", "price", "images", "stock", "is_active"]


def product_out(product: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(product)
    data["category"] = populate("category", data.get("category_id"), ["name"])
    data["brand"] = populate("brand", data.get("brand_id"), ["name"])
    data["supplier"] = populate("supplier", data.get("supplier_id"), ["name", "company"])
    return data


def order_out(order: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(order)
    data["user"] = populate("user", data.get("user_id"), ["name", "email"])
    for item in data.get("items", []):
        item["product"] = populate("product", item["product_id"], ["name", "price", "images"])
    return data


def invoice_out(invoice: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(invoice)
    data["supplier"] = populate("supplier", data.get("supplier_id"), ["name", "email", "company"])
    data["received_by_user"] = populate("user", data.get("received_by"), ["name", "email"])
    for item in data.get("items", []):
        item["product"] = populate("product", item["product_id"], ["name", "price", "stock"])
    return data


def cart_out(cart: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(cart)
    for item in data.get("items", []):
        item["product"] = populate("product", item["product_id"], PRODUCT_CARD_FIELDS)
    return data


def favourites_out(favourites: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(favourites)
    fields = ["name", "price", "images", "rating", "num_reviews", "brand_id", "category_id"]
    data["products"] = [p for p in (populate("product", pid, fields) for pid in data.get("product_ids", [])) if p]
    return data


def review_out(review: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(review)
    data["user"] = populate("user", data.get("user_id"), ["name"])
    data["product"] = populate("product", data.get("product_id"), ["name"])
    return data


def get_live_product(product_id: str) -> Dict[str, Any]:
    product = find_by_id("product", product_id, "Product")
    if product.get("is_deleted"):
        raise HTTPException(status_code=404, detail="Product not found")
    return product


# Routes
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# Auth
@app.post(f"{API}/auth/register", status_code=201)
def register(req: RegisterRequest, response: Response):
    email = req.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User already exists")
    if len(req.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    user = UserSchema(
        name=req.name,
        email=email,
        password_hash=hash_password(req.password),
        phone=req.phone,
        address=req.address,
    )
    user_id = create_document("user", user)
    created = db["user"].find_one({"_id": ObjectId(user_id)})
    set_auth_cookie(response, create_token(created))
    return {"data": public_user(created)}


@app.post(f"{API}/auth/login")
def login(req: LoginRequest, response: Response):
    user = authenticate(req.email, req.password)
    set_auth_cookie(response, create_token(user))
    return {"data": public_user(user)}


@app.post(f"{API}/auth/logout")
def logout(response: Response):
    clear_auth_cookie(response)
    return {"message": "Logged out successfully"}


@app.get(f"{API}/auth/me")
def me(user=Depends(get_current_user)):
    return {"data": public_user(user)}


# Users
@app.get(f"{API}/users/{{user_id}}")
def get_user(user_id: str, caller=Depends(require_self_or_admin)):
    return {"data": public_user(find_by_id("user", user_id, "User"))}


@app.put(f"{API}/users/{{user_id}}")
def update_user(user_id: str, req: UserUpdateRequest, caller=Depends(require_self_or_admin)):
    user = find_by_id("user", user_id, "User")
    updates = {k: v for k, v in req.model_dump().items() if v is not None}
    if "email" in updates:
        updates["email"] = updates["email"].lower()
        if db["user"].find_one({"email": updates["email"], "_id": {"$ne": user["_id"]}}):
            raise HTTPException(status_code=400, detail="Email already registered")
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = utcnow()
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return {"message": "User updated successfully", "data": public_user(updated)}


@app.patch(f"{API}/users/{{user_id}}/password")
def update_password(user_id: str, req: PasswordUpdateRequest, caller=Depends(require_self_or_admin)):
    user = find_by_id("user", user_id, "User")
    if not verify_password(req.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    if len(req.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(req.new_password), "updated_at": utcnow()}},
    )
    return {"message": "Password updated successfully"}


# Reference entities
@app.post(f"{API}/categories", status_code=201)
def create_category(req: CategorySchema, admin=Depends(require_admin)):
    if db["category"].find_one({"name": req.name}):
        raise HTTPException(status_code=400, detail="Category already exists")
    _id = create_document("category", req)
    return {"message": "Category created successfully", "data": serialize_doc(db["category"].find_one({"_id": ObjectId(_id)}))}


@app.get(f"{API}/categories/{{category_id}}")
def get_category(category_id: str):
    return {"data": serialize_doc(find_by_id("category", category_id, "Category"))}


@app.post(f"{API}/brands", status_code=201)
def create_brand(req: BrandSchema, admin=Depends(require_admin)):
    if db["brand"].find_one({"name": req.name}):
        raise HTTPException(status_code=400, detail="Brand already exists")
    _id = create_document("brand", req)
    return {"message": "Brand created successfully", "data": serialize_doc(db["brand"].find_one({"_id": ObjectId(_id)}))}


@app.get(f"{API}/brands/{{brand_id}}")
def get_brand(brand_id: str):
    return {"data": serialize_doc(find_by_id("brand", brand_id, "Brand"))}


@app.post(f"{API}/suppliers", status_code=201)
def create_supplier(req: SupplierSchema, admin=Depends(require_admin)):
    req.email = req.email.lower()
    if db["supplier"].find_one({"email": req.email}):
        raise HTTPException(status_code=400, detail="Supplier with this email already exists")
    _id = create_document("supplier", req)
    return {"message": "Supplier created successfully", "data": serialize_doc(db["supplier"].find_one({"_id": ObjectId(_id)}))}


@app.get(f"{API}/suppliers/{{supplier_id}}")
def get_supplier(supplier_id: str, admin=Depends(require_admin)):
    return {"data": serialize_doc(find_by_id("supplier", supplier_id, "Supplier"))}


# Products
@app.get(f"{API}/products/featured")
def featured_products():
    products = db["product"].find({"is_featured": True, "is_active": True, "is_deleted": False}).limit(8)
    return {"data": [product_out(p) for p in products]}


@app.get(f"{API}/products/{{product_id}}")
def get_product(product_id: str):
    return {"data": product_out(get_live_product(product_id))}


@app.get(f"{API}/products/{{product_id}}/check-stock")
def check_product_stock(product_id: str, quantity: int = 1):
    product = get_live_product(product_id)
    stock = product.get("stock", 0)
    active = product.get("is_active", True)
    available = active and stock >= quantity
    if available:
        message = "Product is in stock"
    elif not active:
        message = "Product is not available"
    else:
        message = f"Only {stock} items available"
    return {
        "data": {
            "product_id": str(product["_id"]),
            "product_name": product["name"],
            "current_stock": stock,
            "requested_quantity": quantity,
            "available": available,
            "message": message,
        }
    }


@app.post(f"{API}/products", status_code=201)
def create_product(req: ProductCreateRequest, admin=Depends(require_admin)):
    find_by_id("category", req.category_id, "Category")
    find_by_id("brand", req.brand_id, "Brand")
    if req.supplier_id:
        find_by_id("supplier", req.supplier_id, "Supplier")
    prod = ProductSchema(user_id=str(admin["_id"]), **req.model_dump())
    _id = create_document("product", prod)
    return {"message": "Product created successfully", "data": product_out(db["product"].find_one({"_id": ObjectId(_id)}))}


@app.put(f"{API}/products/{{product_id}}")
def update_product(product_id: str, req: ProductUpdateRequest, admin=Depends(require_admin)):
    product = get_live_product(product_id)
    updates = {k: v for k, v in req.model_dump().items() if v is not None}
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    if "category_id" in updates:
        find_by_id("category", updates["category_id"], "Category")
    if "brand_id" in updates:
        find_by_id("brand", updates["brand_id"], "Brand")
    if "supplier_id" in updates:
        find_by_id("supplier", updates["supplier_id"], "Supplier")
    updates["updated_at"] = utcnow()
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return {"message": "Product updated successfully", "data": product_out(updated)}


@app.delete(f"{API}/products/{{product_id}}")
def delete_product(product_id: str, admin=Depends(require_admin)):
    product = get_live_product(product_id)
    now = utcnow()
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"is_deleted": True, "deleted_at": now, "is_active": False, "updated_at": now}},
    )
    return {"message": "Product deleted successfully"}


@app.patch(f"{API}/products/{{product_id}}/stock")
def update_product_stock(product_id: str, req: StockUpdateRequest, admin=Depends(require_admin)):
    """Manual stock corrections: damages, returns, recounts"""
    product = get_live_product(product_id)
    if req.operation == "add":
        query = {"_id": product["_id"]}
        change = req.quantity
    else:
        query = {"_id": product["_id"], "stock": {"$gte": req.quantity}}
        change = -req.quantity
    updated = db["product"].find_one_and_update(
        query,
        {"$inc": {"stock": change}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=400, detail="Insufficient stock")
    return {"message": "Stock updated successfully", "data": product_out(updated)}


@app.patch(f"{API}/products/{{product_id}}/feature")
def toggle_featured_product(product_id: str, admin=Depends(require_admin)):
    product = get_live_product(product_id)
    featured = not product.get("is_featured", False)
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {"is_featured": featured, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"message": f"Product {'featured' if featured else 'unfeatured'} successfully", "data": product_out(updated)}


# Cart
def get_or_create(collection_name: str, empty: BaseModel) -> Dict[str, Any]:
    """One document per user, created empty on first access"""
    data = empty.model_dump()
    user_id = data.pop("user_id")
    now = utcnow()
    return db[collection_name].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {**data, "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def get_or_create_cart(user: dict) -> Dict[str, Any]:
    return get_or_create("cart", CartSchema(user_id=str(user["_id"])))


def get_or_create_favourites(user: dict) -> Dict[str, Any]:
    return get_or_create("favourite", FavouriteSchema(user_id=str(user["_id"])))


def update_cart(cart_id: ObjectId, query: Dict[str, Any], update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Apply an item update in place, then re-derive total_price from the items it produced"""
    cart = db["cart"].find_one_and_update(
        {"_id": cart_id, **query}, update, return_document=ReturnDocument.AFTER
    )
    if cart is None:
        return None
    total_price = sum(item["price"] * item["quantity"] for item in cart.get("items", []))
    # skipped if the items changed since
    db["cart"].update_one(
        {"_id": cart_id, "items": cart.get("items", [])},
        {"$set": {"total_price": total_price, "updated_at": utcnow()}},
    )
    cart["total_price"] = total_price
    return cart


def find_cart(user: dict) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user_id": str(user["_id"])})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    return cart


def check_cart_quantity(product: Dict[str, Any], quantity: int):
    if not product.get("is_active", True):
        raise HTTPException(status_code=400, detail="Product is not available")
    if product.get("stock", 0) < quantity:
        raise HTTPException(status_code=400, detail=f"Only {product.get('stock', 0)} items available in stock")


@app.get(f"{API}/carts")
def get_cart(user=Depends(get_current_user)):
    return {"data": cart_out(get_or_create_cart(user))}


@app.post(f"{API}/carts/items")
def add_cart_item(req: CartItemRequest, user=Depends(get_current_user)):
    product = get_live_product(req.product_id)
    check_cart_quantity(product, req.quantity)

    cart = get_or_create_cart(user)
    existing = next((item for item in cart.get("items", []) if item["product_id"] == req.product_id), None)
    if existing:
        check_cart_quantity(product, existing["quantity"] + req.quantity)

    updated = None
    if not existing:
        line = {"product_id": req.product_id, "quantity": req.quantity, "price": product["price"]}
        updated = update_cart(
            cart["_id"], {"items.product_id": {"$ne": req.product_id}}, {"$push": {"items": line}}
        )
    if updated is None:
        updated = update_cart(
            cart["_id"], {"items.product_id": req.product_id}, {"$inc": {"items.$.quantity": req.quantity}}
        )
    if updated is None:
        raise HTTPException(status_code=409, detail="Cart changed, please retry")
    return {"message": "Item added to cart", "data": cart_out(updated)}


@app.patch(f"{API}/carts/items/{{product_id}}")
def update_cart_item(product_id: str, req: CartQuantityRequest, user=Depends(get_current_user)):
    product = get_live_product(product_id)
    check_cart_quantity(product, req.quantity)

    cart = find_cart(user)
    updated = update_cart(
        cart["_id"], {"items.product_id": product_id}, {"$set": {"items.$.quantity": req.quantity}}
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    return {"message": "Cart updated", "data": cart_out(updated)}


@app.delete(f"{API}/carts/items/{{product_id}}")
def remove_cart_item(product_id: str, user=Depends(get_current_user)):
    cart = find_cart(user)
    updated = update_cart(cart["_id"], {}, {"$pull": {"items": {"product_id": product_id}}})
    return {"message": "Item removed from cart", "data": cart_out(updated)}


@app.delete(f"{API}/carts")
def clear_cart(user=Depends(get_current_user)):
    cart = find_cart(user)
    updated = update_cart(cart["_id"], {}, {"$set": {"items": []}})
    return {"message": "Cart cleared", "data": cart_out(updated)}


# Favourites
@app.get(f"{API}/favourites")
def get_favourites(user=Depends(get_current_user)):
    favourites = get_or_create_favourites(user)
    return {"count": len(favourites.get("product_ids", [])), "data": favourites_out(favourites)}


@app.get(f"{API}/favourites/check/{{product_id}}")
def check_favourite(product_id: str, user=Depends(get_current_user)):
    favourites = db["favourite"].find_one({"user_id": str(user["_id"])})
    is_favourite = bool(favourites and product_id in favourites.get("product_ids", []))
    return {"data": {"is_favourite": is_favourite}}


@app.post(f"{API}/favourites/{{product_id}}")
def add_favourite(product_id: str, user=Depends(get_current_user)):
    get_live_product(product_id)
    favourites = get_or_create_favourites(user)
    if product_id in favourites.get("product_ids", []):
        raise HTTPException(status_code=400, detail="Product already in favourites")
    updated = db["favourite"].find_one_and_update(
        {"_id": favourites["_id"]},
        {"$addToSet": {"product_ids": product_id}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"message": "Product added to favourites", "data": favourites_out(updated)}


@app.delete(f"{API}/favourites/{{product_id}}")
def remove_favourite(product_id: str, user=Depends(get_current_user)):
    favourites = db["favourite"].find_one({"user_id": str(user["_id"])})
    if not favourites:
        raise HTTPException(status_code=404, detail="Favourites not found")
    if product_id not in favourites.get("product_ids", []):
        raise HTTPException(status_code=404, detail="Product not in favourites")
    updated = db["favourite"].find_one_and_update(
        {"_id": favourites["_id"]},
        {"$pull": {"product_ids": product_id}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"message": "Product removed from favourites", "data": favourites_out(updated)}


@app.delete(f"{API}/favourites")
def clear_favourites(user=Depends(get_current_user)):
    favourites = db["favourite"].find_one({"user_id": str(user["_id"])})
    if not favourites:
        raise HTTPException(status_code=404, detail="Favourites not found")
    updated = db["favourite"].find_one_and_update(
        {"_id": favourites["_id"]},
        {"$set": {"product_ids": [], "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"message": "Favourites cleared", "data": favourites_out(updated)}


# Orders
@app.post(f"{API}/orders", status_code=201)
def create_order(req: OrderCreateRequest, user=Depends(get_current_user)):
    order_id = inventory.place_order(
        user,
        [item.model_dump() for item in req.items],
        req.shipping_address,
        req.payment_method,
        shipping_cost=req.shipping_cost,
        tax_amount=req.tax_amount,
    )
    return {"message": "Order created successfully", "data": order_out(db["order"].find_one({"_id": ObjectId(order_id)}))}


@app.get(f"{API}/orders/{{order_id}}")
def get_order(order_id: str, user=Depends(get_current_user)):
    return {"data": order_out(inventory.get_order_for(order_id, user))}


@app.patch(f"{API}/orders/{{order_id}}/status")
def update_order_status(order_id: str, req: OrderStatusRequest, admin=Depends(require_admin)):
    order = inventory.update_order_status(order_id, req.status)
    return {"message": "Order status updated successfully", "data": order_out(order)}


@app.patch(f"{API}/orders/{{order_id}}/pay")
def pay_order(order_id: str, req: Optional[PaymentResult] = None, user=Depends(get_current_user)):
    order = inventory.mark_order_paid(order_id, user, req or PaymentResult())
    return {"message": "Order marked as paid", "data": order_out(order)}


@app.patch(f"{API}/orders/{{order_id}}/cancel")
def cancel_order(order_id: str, user=Depends(get_current_user)):
    order = inventory.cancel_order(order_id, user)
    return {"message": "Order cancelled successfully and stock restored", "data": order_out(order)}


# Purchase invoices
@app.post(f"{API}/purchase-invoices/validate-products")
def validate_invoice_products(req: ProductIdsRequest, admin=Depends(require_admin)):
    return {"data": inventory.split_known_products(req.product_ids)}


@app.post(f"{API}/purchase-invoices", status_code=201)
def create_purchase_invoice(req: PurchaseInvoiceCreateRequest, admin=Depends(require_admin)):
    invoice_id = inventory.create_purchase_invoice(
        admin,
        req.supplier_id,
        [item.model_dump() for item in req.items],
        shipping_cost=req.shipping_cost,
        tax_amount=req.tax_amount,
    )
    invoice = db["purchaseinvoice"].find_one({"_id": ObjectId(invoice_id)})
    return {"message": "Purchase invoice created and stock updated successfully", "data": invoice_out(invoice)}


@app.get(f"{API}/purchase-invoices/{{invoice_id}}")
def get_purchase_invoice(invoice_id: str, admin=Depends(require_admin)):
    return {"data": invoice_out(find_by_id("purchaseinvoice", invoice_id, "Purchase invoice"))}


@app.patch(f"{API}/purchase-invoices/{{invoice_id}}/cancel")
def cancel_purchase_invoice(invoice_id: str, admin=Depends(require_admin)):
    adjustments = inventory.cancel_purchase_invoice(invoice_id, restore_stock=True)
    return {"message": "Purchase invoice cancelled and stock restored", "data": {"adjustments": adjustments}}


@app.delete(f"{API}/purchase-invoices/{{invoice_id}}")
def delete_purchase_invoice(invoice_id: str, restore_stock: bool = False, admin=Depends(require_admin)):
    adjustments = inventory.cancel_purchase_invoice(invoice_id, restore_stock=restore_stock)
    return {"message": "Purchase invoice deleted successfully", "data": {"adjustments": adjustments}}


# Reviews
def update_product_rating(product_id: str):
    """Re-aggregate rating and review count from every approved review"""
    reviews = get_documents("review", {"product_id": product_id, "is_approved": True})
    num_reviews = len(reviews)
    mean = sum(r["rating"] for r in reviews) / num_reviews if num_reviews else 0
    rating = math.floor(mean * 10 + 0.5) / 10
    db["product"].update_one(
        {"_id": ObjectId(product_id)},
        {"$set": {"rating": rating, "num_reviews": num_reviews, "updated_at": utcnow()}},
    )
    logger.debug("Product %s rating %.1f from %d reviews", product_id, rating, num_reviews)


def check_rating(rating: int):
    if rating < 1 or rating > 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")


@app.post(f"{API}/reviews/product/{{product_id}}", status_code=201)
def create_review(product_id: str, req: ReviewCreateRequest, user=Depends(get_current_user)):
    check_rating(req.rating)
    get_live_product(product_id)
    user_id = str(user["_id"])
    if db["review"].find_one({"product_id": product_id, "user_id": user_id}):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")

    review = ReviewSchema(product_id=product_id, user_id=user_id, rating=req.rating, comment=req.comment)
    _id = create_document("review", review)
    update_product_rating(product_id)
    return {"message": "Review created successfully", "data": review_out(db["review"].find_one({"_id": ObjectId(_id)}))}


@app.patch(f"{API}/reviews/approve")
def bulk_approve_reviews(req: ReviewIdsRequest, admin=Depends(require_admin)):
    ids = [to_object_id(review_id, "Review") for review_id in req.review_ids]
    product_ids = {r["product_id"] for r in db["review"].find({"_id": {"$in": ids}}, {"product_id": 1})}
    result = db["review"].update_many(
        {"_id": {"$in": ids}}, {"$set": {"is_approved": True, "updated_at": utcnow()}}
    )
    for product_id in product_ids:
        update_product_rating(product_id)
    return {"message": f"{result.modified_count} reviews approved", "data": {"approved": result.modified_count}}


@app.put(f"{API}/reviews/{{review_id}}")
def update_review(review_id: str, req: ReviewUpdateRequest, user=Depends(get_current_user)):
    review = find_by_id("review", review_id, "Review")
    if review["user_id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Not authorized to update this review")
    updates: Dict[str, Any] = {}
    if req.rating is not None:
        check_rating(req.rating)
        updates["rating"] = req.rating
    if req.comment:
        updates["comment"] = req.comment
    updates["updated_at"] = utcnow()
    updated = db["review"].find_one_and_update(
        {"_id": review["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    update_product_rating(review["product_id"])
    return {"message": "Review updated successfully", "data": review_out(updated)}


@app.delete(f"{API}/reviews/{{review_id}}")
def delete_review(review_id: str, user=Depends(get_current_user)):
    review = find_by_id("review", review_id, "Review")
    if review["user_id"] != str(user["_id"]) and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not authorized to delete this review")
    db["review"].delete_one({"_id": review["_id"]})
    update_product_rating(review["product_id"])
    return {"message": "Review deleted successfully"}


@app.patch(f"{API}/reviews/{{review_id}}/approve")
def toggle_review_approval(review_id: str, admin=Depends(require_admin)):
    review = find_by_id("review", review_id, "Review")
    approved = not review.get("is_approved", False)
    updated = db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$set": {"is_approved": approved, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    update_product_rating(review["product_id"])
    return {"message": f"Review {'approved' if approved else 'unapproved'}", "data": review_out(updated)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
