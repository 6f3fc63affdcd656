import logging
import os
import re
import secrets
import string
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Literal

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from bson import ObjectId
from pymongo import ReturnDocument
import jwt
from passlib.context import CryptContext

from database import db, create_document, get_documents
from pricing import (
    CouponRejected,
    active_category_discount,
    compute_totals,
    effective_price,
    evaluate_coupon,
    line_subtotal,
    normalize_code,
    utc_naive,
)
from schemas import (
    Address,
    Cart,
    CartItem,
    Category,
    CategoryDiscount,
    Coupon,
    DiscountType,
    InventoryTransaction,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    Review,
    User,
    UserRole,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# App setup
app = FastAPI(title="Furniture Store API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}
security = HTTPBearer()
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")

ADMIN_ROLES = ("admin_viewer", "admin_manager")
COUPON_CLAIM_ATTEMPTS = 3


@app.exception_handler(CouponRejected)
async def coupon_rejected_handler(request: Request, exc: CouponRejected):
    return JSONResponse(status_code=400, content={"detail": exc.message, "reason": exc.reason})


# Utilities
def to_object_id(value: str, what: str = "Resource") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=404, detail=f"{what} not found")
    return ObjectId(value)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    doc.pop("hashed_password", None)
    return doc


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "exp": datetime.utcnow() + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    token = credentials.credentials
    payload = decode_token(token)
    uid = payload.get("sub")
    user = db["user"].find_one({"_id": ObjectId(uid)}) if ObjectId.is_valid(uid or "") else None
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def get_admin_viewer(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Admin only")
    return user


async def get_admin_manager(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin_manager":
        raise HTTPException(status_code=403, detail="Admin manager only")
    return user


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "full_name": user.get("full_name"),
        "email": user.get("email"),
        "role": user.get("role", "user"),
    }


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"ORD-{datetime.utcnow():%Y%m%d}-{suffix}"


# Schemas (request/response)
class RegisterRequest(BaseModel):
    full_name: Optional[str] = None
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None


class CategoryDiscountUpdate(BaseModel):
    discount_percentage: Optional[float] = Field(None, gt=0, le=100)
    is_active: Optional[bool] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category_id: Optional[str] = None
    image_url: Optional[str] = None
    sku: Optional[str] = None
    in_stock: Optional[bool] = None
    dimensions: Optional[Dict[str, Any]] = None
    weight: Optional[float] = Field(None, ge=0)


class InventoryAdjustment(BaseModel):
    quantity_change: int
    type: Literal["adjustment", "restock"] = "adjustment"
    notes: Optional[str] = None


class ReviewIn(BaseModel):
    rating: int = Field(5, ge=1, le=5)
    comment: str = Field(..., min_length=1)


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CartUpdateIn(BaseModel):
    product_id: str
    quantity: int


class CartRemoveIn(BaseModel):
    product_id: str


class CouponCodeIn(BaseModel):
    code: Optional[str] = None


class CouponUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, gt=0)
    category_id: Optional[str] = None
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class CheckoutRequest(BaseModel):
    shipping_address_id: Optional[str] = None
    shipping_address: Optional[Address] = None
    payment_method: PaymentMethod = "bank_qr"
    coupon_code: Optional[str] = None
    notes: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderEdit(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    admin_notes: Optional[str] = None


class RoleUpdate(BaseModel):
    role: UserRole


# Health and helpers
@app.get("/")
def root():
    return {"message": "Furniture Store API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        logger.warning("database health check failed: %s", e)
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register")
def register(payload: RegisterRequest):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    doc = User(
        full_name=payload.full_name,
        email=email,
        hashed_password=hash_password(payload.password),
        role="admin_manager" if email in ADMIN_EMAILS else "user",
    ).model_dump()
    doc.update({"email": email, "created_at": datetime.utcnow(), "updated_at": datetime.utcnow()})
    inserted_id = db["user"].insert_one(doc).inserted_id
    user = db["user"].find_one({"_id": inserted_id})
    logger.info("registered user %s", inserted_id)
    return {"token": create_token(user), "user": public_user(user)}


@app.post("/auth/login")
def login(payload: LoginRequest):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": public_user(user)}


@app.get("/me")
async def me(current_user: dict = Depends(get_current_user)):
    return public_user(current_user)


@app.put("/me")
async def update_profile(update: ProfileUpdate, current_user: dict = Depends(get_current_user)):
    changes = update.model_dump(exclude_unset=True)
    changes["updated_at"] = datetime.utcnow()
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": changes})
    user = db["user"].find_one({"_id": current_user["_id"]})
    return public_user(user)


# Addresses
@app.get("/me/addresses")
async def list_addresses(user: dict = Depends(get_current_user)):
    items = get_documents("address", {"user_id": str(user["_id"])},
                          sort=[("is_default", -1), ("created_at", -1)])
    return {"items": items}


@app.post("/me/addresses")
async def add_address(payload: Address, user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    doc = payload.model_dump()
    # the first address becomes the default; a new default replaces the old one
    if db["address"].count_documents({"user_id": uid}) == 0:
        doc["is_default"] = True
    if doc["is_default"]:
        db["address"].update_many({"user_id": uid}, {"$set": {"is_default": False}})
    doc["user_id"] = uid
    address_id = create_document("address", doc)
    return {"id": address_id, **{k: v for k, v in doc.items() if k != "_id"}}


@app.delete("/me/addresses/{address_id}")
async def delete_address(address_id: str, user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    result = db["address"].delete_one({"_id": to_object_id(address_id, "Address"), "user_id": uid})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Address not found")
    return {"id": address_id, "deleted": True}


# Categories
def discounts_by_category(category_ids: Optional[List[str]] = None) -> Dict[str, dict]:
    filt: Dict[str, Any] = {"is_active": True}
    if category_ids is not None:
        filt["category_id"] = {"$in": category_ids}
    grouped: Dict[str, List[dict]] = {}
    for d in db["category_discount"].find(filt):
        grouped.setdefault(d["category_id"], []).append(d)
    active = {}
    for cid, discounts in grouped.items():
        chosen = active_category_discount(discounts)
        if chosen:
            active[cid] = chosen
    return active


def ensure_category(category_id: Optional[str]) -> Optional[dict]:
    if category_id is None:
        return None
    category = db["category"].find_one({"_id": to_object_id(category_id, "Category")})
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@app.get("/categories")
def list_categories():
    discounts = discounts_by_category()
    items = []
    for c in db["category"].find({}).sort("name", 1):
        c = serialize(c)
        active = discounts.get(c["id"])
        c["discount_percentage"] = active["discount_percentage"] if active else None
        c["product_count"] = db["product"].count_documents({"category_id": c["id"]})
        items.append(c)
    return {"items": items}


@app.post("/admin/categories")
async def create_category(payload: Category, user: dict = Depends(get_admin_manager)):
    if db["category"].find_one({"name": payload.name}):
        raise HTTPException(status_code=409, detail="Category already exists")
    return {"id": create_document("category", payload)}


@app.put("/admin/categories/{category_id}")
async def update_category(category_id: str, payload: CategoryUpdate, user: dict = Depends(get_admin_manager)):
    ensure_category(category_id)
    changes = payload.model_dump(exclude_unset=True)
    changes["updated_at"] = datetime.utcnow()
    db["category"].update_one({"_id": ObjectId(category_id)}, {"$set": changes})
    return serialize(db["category"].find_one({"_id": ObjectId(category_id)}))


@app.delete("/admin/categories/{category_id}")
async def delete_category(category_id: str, user: dict = Depends(get_admin_manager)):
    ensure_category(category_id)
    if db["product"].count_documents({"category_id": category_id}) > 0:
        raise HTTPException(status_code=409, detail="Category still has products")
    db["category"].delete_one({"_id": ObjectId(category_id)})
    db["category_discount"].delete_many({"category_id": category_id})
    return {"id": category_id, "deleted": True}


@app.get("/admin/category-discounts")
async def list_category_discounts(user: dict = Depends(get_admin_viewer)):
    return {"items": get_documents("category_discount", sort=[("created_at", -1)])}


@app.post("/admin/category-discounts")
async def create_category_discount(payload: CategoryDiscount, user: dict = Depends(get_admin_manager)):
    ensure_category(payload.category_id)
    return {"id": create_document("category_discount", payload)}


@app.put("/admin/category-discounts/{discount_id}")
async def update_category_discount(discount_id: str, payload: CategoryDiscountUpdate,
                                   user: dict = Depends(get_admin_manager)):
    oid = to_object_id(discount_id, "Discount")
    changes = payload.model_dump(exclude_unset=True)
    changes["updated_at"] = datetime.utcnow()
    result = db["category_discount"].update_one({"_id": oid}, {"$set": changes})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Discount not found")
    return serialize(db["category_discount"].find_one({"_id": oid}))


@app.delete("/admin/category-discounts/{discount_id}")
async def delete_category_discount(discount_id: str, user: dict = Depends(get_admin_manager)):
    result = db["category_discount"].delete_one({"_id": to_object_id(discount_id, "Discount")})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Discount not found")
    return {"id": discount_id, "deleted": True}


# Products
def present_product(p: dict, discounts: Dict[str, dict], category_names: Dict[str, str]) -> dict:
    p = serialize(p)
    active = discounts.get(p.get("category_id"))
    base = float(p.get("price", 0.0))
    p["price"] = effective_price(base, active["discount_percentage"] if active else None)
    p["original_price"] = base if active else None
    p["category"] = category_names.get(p.get("category_id"), "Uncategorized")
    p["in_stock"] = bool(p.get("in_stock", True)) and (p.get("stock_quantity") or 0) > 0
    return p


def category_name_map() -> Dict[str, str]:
    return {str(c["_id"]): c["name"] for c in db["category"].find({}, {"name": 1})}


@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, sort: Optional[str] = None,
                  page: int = 1, page_size: int = 12, min_price: Optional[float] = None,
                  max_price: Optional[float] = None):
    filt: Dict[str, Any] = {}
    names = category_name_map()
    if q:
        # substring match, never a user-supplied pattern
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        matching = [cid for cid, name in names.items() if q.strip().lower() in name.lower()]
        filt["$or"] = [{"name": pattern}, {"description": pattern}, {"category_id": {"$in": matching}}]
    if category:
        filt["category_id"] = category

    discounts = discounts_by_category()
    products = [present_product(p, discounts, names) for p in db["product"].find(filt)]

    # price bounds apply to the price the customer pays
    if min_price is not None:
        products = [p for p in products if p["price"] >= min_price]
    if max_price is not None:
        products = [p for p in products if p["price"] <= max_price]

    if sort == "price_asc":
        products.sort(key=lambda p: p["price"])
    elif sort == "price_desc":
        products.sort(key=lambda p: p["price"], reverse=True)
    elif sort == "newest":
        products.sort(key=lambda p: p.get("created_at") or datetime.min, reverse=True)
    elif sort == "name":
        products.sort(key=lambda p: p["name"].lower())

    page = max(1, page)
    page_size = max(1, min(page_size, 100))
    start = (page - 1) * page_size
    return {"items": products[start:start + page_size], "page": page, "page_size": page_size,
            "total": len(products)}


@app.get("/products/{product_id}")
def get_product(product_id: str):
    p = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    discounts = discounts_by_category()
    names = category_name_map()
    related = []
    if p.get("category_id"):
        cursor = db["product"].find({"category_id": p["category_id"], "_id": {"$ne": p["_id"]}}).limit(4)
        related = [present_product(r, discounts, names) for r in cursor]
    product = present_product(p, discounts, names)
    product["related"] = related
    return product


@app.post("/admin/products")
async def create_product(payload: Product, user: dict = Depends(get_admin_manager)):
    ensure_category(payload.category_id)
    return {"id": create_document("product", payload)}


@app.put("/admin/products/{product_id}")
async def update_product(product_id: str, payload: ProductUpdate, user: dict = Depends(get_admin_manager)):
    oid = to_object_id(product_id, "Product")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("category_id"):
        ensure_category(changes["category_id"])
    changes["updated_at"] = datetime.utcnow()
    result = db["product"].update_one({"_id": oid}, {"$set": changes})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"id": product_id, "updated": True}


@app.delete("/admin/products/{product_id}")
async def delete_product(product_id: str, user: dict = Depends(get_admin_manager)):
    result = db["product"].delete_one({"_id": to_object_id(product_id, "Product")})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"id": product_id, "deleted": True}


# Inventory
def record_inventory(product_id: str, kind: str, change: int, after: int, reference_type: Optional[str] = None,
                     reference_id: Optional[str] = None, notes: Optional[str] = None,
                     created_by: Optional[str] = None) -> str:
    tx = InventoryTransaction(
        product_id=product_id,
        type=kind,
        quantity_change=change,
        quantity_after=after,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        created_by=created_by,
    )
    return create_document("inventory_transaction", tx)


@app.post("/admin/products/{product_id}/inventory")
async def adjust_inventory(product_id: str, payload: InventoryAdjustment, user: dict = Depends(get_admin_manager)):
    oid = to_object_id(product_id, "Product")
    filt: Dict[str, Any] = {"_id": oid}
    if payload.quantity_change < 0:
        filt["stock_quantity"] = {"$gte": -payload.quantity_change}
    updated = db["product"].find_one_and_update(
        filt, {"$inc": {"stock_quantity": payload.quantity_change}}, return_document=ReturnDocument.AFTER
    )
    if updated is None:
        if db["product"].find_one({"_id": oid}) is None:
            raise HTTPException(status_code=404, detail="Product not found")
        raise HTTPException(status_code=400, detail="Stock cannot go below zero")
    after = updated["stock_quantity"]
    db["product"].update_one({"_id": oid}, {"$set": {"in_stock": after > 0, "updated_at": datetime.utcnow()}})
    tx_id = record_inventory(product_id, payload.type, payload.quantity_change, after,
                             reference_type="manual", notes=payload.notes, created_by=str(user["_id"]))
    logger.info("inventory for %s adjusted by %d to %d", product_id, payload.quantity_change, after)
    return {"id": tx_id, "product_id": product_id, "stock_quantity": after}


@app.get("/admin/inventory")
async def list_inventory(product_id: Optional[str] = None, user: dict = Depends(get_admin_viewer)):
    filt = {"product_id": product_id} if product_id else {}
    return {"items": get_documents("inventory_transaction", filt, sort=[("created_at", -1)])}


# Reviews
@app.get("/products/{product_id}/reviews")
def list_reviews(product_id: str):
    items = get_documents("review", {"product_id": product_id}, sort=[("created_at", -1)])
    distribution = [0, 0, 0, 0, 0]  # index 0 is 5 stars
    for r in items:
        if 1 <= r.get("rating", 0) <= 5:
            distribution[5 - r["rating"]] += 1
    average = round(sum(r["rating"] for r in items) / len(items), 1) if items else 0
    return {"items": items, "average": average, "count": len(items), "distribution": distribution}


@app.post("/products/{product_id}/reviews")
async def add_review(product_id: str, payload: ReviewIn, user: dict = Depends(get_current_user)):
    if not db["product"].find_one({"_id": to_object_id(product_id, "Product")}):
        raise HTTPException(status_code=404, detail="Product not found")
    review = Review(product_id=product_id, user_id=str(user["_id"]), rating=payload.rating,
                    comment=payload.comment.strip())
    return {"id": create_document("review", review)}


# Cart
def price_cart(items: List[dict]) -> List[dict]:
    """Resolve cart items into lines at the current effective price."""
    ids = [ObjectId(it["product_id"]) for it in items if ObjectId.is_valid(it["product_id"])]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})}
    discounts = discounts_by_category()
    names = category_name_map()
    lines = []
    for it in items:
        prod = products.get(it["product_id"])
        if not prod:
            continue
        presented = present_product(prod, discounts, names)
        qty = it["quantity"]
        lines.append({
            "product_id": it["product_id"],
            "name": presented["name"],
            "image_url": presented.get("image_url"),
            "category_id": presented.get("category_id"),
            "category": presented["category"],
            "quantity": qty,
            "unit_price": presented["price"],
            "original_price": presented["original_price"],
            "stock_quantity": presented.get("stock_quantity", 0),
            "line_total": round(presented["price"] * qty, 2),
        })
    return lines


def load_cart(uid: str) -> dict:
    cart = db["cart"].find_one({"user_id": uid})
    if not cart:
        cart = Cart(user_id=uid).model_dump()
        db["cart"].insert_one(cart)
    return cart


def find_coupon(code: Optional[str]) -> dict:
    code = normalize_code(code)
    coupon = db["coupon"].find_one({"code": code}) if code else None
    if not coupon:
        raise CouponRejected("invalid", "The coupon code you entered is not valid or has expired.")
    return coupon


def quote(lines: List[dict], coupon_code: Optional[str] = None) -> dict:
    subtotal = line_subtotal(lines)
    discount = 0.0
    coupon = None
    if coupon_code:
        coupon = find_coupon(coupon_code)
        discount = evaluate_coupon(coupon, lines)
    totals = compute_totals(subtotal, discount)
    totals["coupon_code"] = coupon["code"] if coupon else None
    return totals


@app.get("/cart")
async def get_cart(user: dict = Depends(get_current_user)):
    cart = load_cart(str(user["_id"]))
    lines = price_cart(cart.get("items", []))
    return {"items": lines, "item_count": sum(line["quantity"] for line in lines), "totals": quote(lines)}


@app.post("/cart/add")
async def cart_add(item: CartItemIn, user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    cart = load_cart(uid)
    product = db["product"].find_one({"_id": to_object_id(item.product_id, "Product")})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    items = cart.get("items", [])
    existing = next((it for it in items if it["product_id"] == item.product_id), None)
    wanted = item.quantity + (existing["quantity"] if existing else 0)
    stock = product.get("stock_quantity") or 0
    if wanted > stock:
        raise HTTPException(status_code=400, detail=f"Not enough stock. Only {stock} available.")
    if existing:
        existing["quantity"] = wanted
    else:
        items.append(CartItem(product_id=item.product_id, quantity=item.quantity).model_dump())
    db["cart"].update_one({"user_id": uid}, {"$set": {"items": items}})
    return await get_cart(user)


@app.post("/cart/update")
async def cart_update(item: CartUpdateIn, user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    cart = db["cart"].find_one({"user_id": uid})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = cart.get("items", [])
    if item.quantity <= 0:
        items = [it for it in items if it["product_id"] != item.product_id]
    else:
        for it in items:
            if it["product_id"] == item.product_id:
                product = db["product"].find_one({"_id": ObjectId(item.product_id)})
                stock = (product or {}).get("stock_quantity") or 0
                if item.quantity > stock:
                    raise HTTPException(status_code=400, detail=f"Not enough stock. Only {stock} available.")
                it["quantity"] = item.quantity
                break
    db["cart"].update_one({"user_id": uid}, {"$set": {"items": items}})
    return await get_cart(user)


@app.post("/cart/remove")
async def cart_remove(item: CartRemoveIn, user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    cart = load_cart(uid)
    items = [it for it in cart.get("items", []) if it["product_id"] != item.product_id]
    db["cart"].update_one({"user_id": uid}, {"$set": {"items": items}})
    return await get_cart(user)


@app.delete("/cart")
async def cart_clear(user: dict = Depends(get_current_user)):
    db["cart"].update_one({"user_id": str(user["_id"])}, {"$set": {"items": []}}, upsert=True)
    return await get_cart(user)


@app.post("/cart/quote")
async def cart_quote(payload: CouponCodeIn, user: dict = Depends(get_current_user)):
    cart = load_cart(str(user["_id"]))
    lines = price_cart(cart.get("items", []))
    return {"items": lines, "totals": quote(lines, payload.code)}


# Coupons
@app.post("/coupons/validate")
async def validate_coupon(payload: CouponCodeIn, user: dict = Depends(get_current_user)):
    code = normalize_code(payload.code)
    if not code:
        raise HTTPException(status_code=400, detail="Please enter a coupon code")
    cart = load_cart(str(user["_id"]))
    lines = price_cart(cart.get("items", []))
    try:
        totals = quote(lines, code)
    except CouponRejected as exc:
        return {"valid": False, "code": code, "discount": 0, "reason": exc.reason, "message": exc.message}
    return {
        "valid": True,
        "code": code,
        "discount": totals["discount"],
        "totals": totals,
        "message": f"You saved ${totals['discount']:.2f} with coupon {code}",
    }


def check_coupon_fields(doc: dict) -> None:
    if doc.get("discount_type") == "percentage" and doc.get("discount_value", 0) > 100:
        raise HTTPException(status_code=400, detail="Percentage discount cannot exceed 100")
    valid_from, valid_until = utc_naive(doc.get("valid_from")), utc_naive(doc.get("valid_until"))
    if valid_from and valid_until and valid_until < valid_from:
        raise HTTPException(status_code=400, detail="valid_until must be after valid_from")
    if doc.get("category_id"):
        ensure_category(doc["category_id"])


@app.get("/admin/coupons")
async def list_coupons(user: dict = Depends(get_admin_viewer)):
    return {"items": get_documents("coupon", sort=[("created_at", -1)])}


@app.post("/admin/coupons")
async def create_coupon(payload: Coupon, user: dict = Depends(get_admin_manager)):
    doc = payload.model_dump()
    doc["code"] = normalize_code(doc["code"])
    check_coupon_fields(doc)
    if db["coupon"].find_one({"code": doc["code"]}):
        raise HTTPException(status_code=409, detail="Coupon code already exists")
    coupon_id = create_document("coupon", doc)
    logger.info("coupon %s created by %s", doc["code"], user["_id"])
    return {"id": coupon_id, "code": doc["code"]}


@app.put("/admin/coupons/{coupon_id}")
async def update_coupon(coupon_id: str, payload: CouponUpdate, user: dict = Depends(get_admin_manager)):
    oid = to_object_id(coupon_id, "Coupon")
    current = db["coupon"].find_one({"_id": oid})
    if not current:
        raise HTTPException(status_code=404, detail="Coupon not found")
    changes = payload.model_dump(exclude_unset=True)
    if "code" in changes:
        changes["code"] = normalize_code(changes["code"])
        clash = db["coupon"].find_one({"code": changes["code"], "_id": {"$ne": oid}})
        if clash:
            raise HTTPException(status_code=409, detail="Coupon code already exists")
    merged = {**current, **changes}
    check_coupon_fields(merged)
    changes["updated_at"] = datetime.utcnow()
    db["coupon"].update_one({"_id": oid}, {"$set": changes})
    return serialize(db["coupon"].find_one({"_id": oid}))


@app.delete("/admin/coupons/{coupon_id}")
async def delete_coupon(coupon_id: str, user: dict = Depends(get_admin_manager)):
    result = db["coupon"].delete_one({"_id": to_object_id(coupon_id, "Coupon")})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"id": coupon_id, "deleted": True}


# Checkout & Orders
def claim_coupon_use(code: str, lines: List[dict]) -> tuple:
    """Re-check the coupon and take one use of it. Returns (coupon, discount).

    The increment only lands if used_count is unchanged since it was read, so
    concurrent checkouts cannot push a coupon past its usage limit.
    """
    for _ in range(COUPON_CLAIM_ATTEMPTS):
        coupon = find_coupon(code)
        discount = evaluate_coupon(coupon, lines)
        result = db["coupon"].update_one(
            {"_id": coupon["_id"], "used_count": coupon.get("used_count", 0)},
            {"$inc": {"used_count": 1}, "$set": {"updated_at": datetime.utcnow()}},
        )
        if result.modified_count == 1:
            return coupon, discount
        logger.info("coupon %s changed during checkout, retrying", coupon["code"])
    raise HTTPException(status_code=409, detail="Coupon is busy, please try again")


def release_coupon_use(coupon: dict) -> None:
    db["coupon"].update_one({"_id": coupon["_id"], "used_count": {"$gt": 0}}, {"$inc": {"used_count": -1}})


def take_stock(lines: List[dict]) -> List[tuple]:
    """Decrement stock for every line or for none of them.

    Returns (line, quantity_after) pairs. Raises 409 if a line no longer has
    enough stock, after putting back what was already taken.
    """
    taken = []
    for line in lines:
        updated = db["product"].find_one_and_update(
            {"_id": ObjectId(line["product_id"]), "stock_quantity": {"$gte": line["quantity"]}},
            {"$inc": {"stock_quantity": -line["quantity"]}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            return_stock(taken)
            logger.info("stock for %s ran out during checkout", line["product_id"])
            raise HTTPException(status_code=409, detail=f"Not enough stock for {line['name']}")
        taken.append((line, updated["stock_quantity"]))
    return taken


def return_stock(taken: List[tuple]) -> None:
    for line, _ in taken:
        db["product"].update_one(
            {"_id": ObjectId(line["product_id"])},
            {"$inc": {"stock_quantity": line["quantity"]}, "$set": {"in_stock": True}},
        )


def resolve_shipping_address(payload: CheckoutRequest, uid: str) -> Address:
    if payload.shipping_address is not None:
        return payload.shipping_address
    if payload.shipping_address_id:
        doc = db["address"].find_one({"_id": to_object_id(payload.shipping_address_id, "Address"), "user_id": uid})
    else:
        doc = db["address"].find_one({"user_id": uid, "is_default": True})
    if not doc:
        raise HTTPException(status_code=400, detail="Shipping address required")
    return Address(**{k: v for k, v in doc.items() if k in Address.model_fields})


@app.post("/checkout")
async def checkout(payload: CheckoutRequest, user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    cart = db["cart"].find_one({"user_id": uid})
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty")

    lines = price_cart(cart["items"])
    if not lines:
        raise HTTPException(status_code=400, detail="Cart is empty")
    for line in lines:
        if line["quantity"] > line["stock_quantity"]:
            raise HTTPException(status_code=409, detail=f"Not enough stock for {line['name']}")
    address = resolve_shipping_address(payload, uid)

    coupon, discount = (None, 0.0)
    if payload.coupon_code:
        coupon, discount = claim_coupon_use(payload.coupon_code, lines)
    totals = compute_totals(line_subtotal(lines), discount)

    order = Order(
        order_number=generate_order_number(),
        user_id=uid,
        items=[
            OrderItem(
                product_id=line["product_id"],
                product_snapshot={"name": line["name"], "image_url": line["image_url"],
                                  "category": line["category"], "original_price": line["original_price"]},
                quantity=line["quantity"],
                unit_price=line["unit_price"],
                total_price=line["line_total"],
            )
            for line in lines
        ],
        shipping_address=address,
        subtotal=totals["subtotal"],
        discount_amount=totals["discount"],
        shipping_amount=totals["shipping"],
        tax_amount=totals["tax"],
        total_amount=totals["total"],
        coupon_id=str(coupon["_id"]) if coupon else None,
        coupon_code=coupon["code"] if coupon else None,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
    # Decrement inventory, then write the order; undo both claims on failure
    try:
        taken = take_stock(lines)
    except HTTPException:
        if coupon:
            release_coupon_use(coupon)
        raise
    try:
        order_id = create_document("order", order)
    except Exception:
        logger.exception("order %s could not be saved", order.order_number)
        return_stock(taken)
        if coupon:
            release_coupon_use(coupon)
        raise

    for line, after in taken:
        if after == 0:
            db["product"].update_one({"_id": ObjectId(line["product_id"])}, {"$set": {"in_stock": False}})
        record_inventory(line["product_id"], "sale", -line["quantity"], after,
                         reference_type="order", reference_id=order_id, created_by=uid)

    # Clear cart
    db["cart"].update_one({"user_id": uid}, {"$set": {"items": []}})
    logger.info("order %s placed by %s for %.2f", order.order_number, uid, totals["total"])

    return {
        "order_id": order_id,
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "totals": totals,
        "total_amount": totals["total"],
    }


@app.get("/orders")
async def list_orders(user: dict = Depends(get_current_user)):
    return {"items": get_documents("order", {"user_id": str(user["_id"])}, sort=[("created_at", -1)])}


@app.get("/orders/track/{order_number}")
async def track_order(order_number: str, user: dict = Depends(get_current_user)):
    order = db["order"].find_one({"order_number": order_number.strip().upper(), "user_id": str(user["_id"])})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return {
        "order_number": order["order_number"],
        "status": order["status"],
        "payment_status": order.get("payment_status"),
        "carrier": order.get("carrier"),
        "tracking_number": order.get("tracking_number"),
        "placed_at": order.get("created_at"),
        "shipped_at": order.get("shipped_at"),
        "delivered_at": order.get("delivered_at"),
    }


@app.get("/orders/{order_id}")
async def get_order(order_id: str, user: dict = Depends(get_current_user)):
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order")})
    if not order or (order["user_id"] != str(user["_id"]) and user.get("role") not in ADMIN_ROLES):
        raise HTTPException(status_code=404, detail="Order not found")
    return serialize(order)


def apply_status_change(changes: dict) -> dict:
    status = changes.get("status")
    if status == "shipped":
        changes["shipped_at"] = datetime.utcnow()
    elif status == "delivered":
        changes["delivered_at"] = datetime.utcnow()
    return changes


@app.get("/admin/orders")
async def admin_list_orders(status: Optional[OrderStatus] = None, user: dict = Depends(get_admin_viewer)):
    filt = {"status": status} if status else {}
    return {"items": get_documents("order", filt, sort=[("created_at", -1)])}


@app.put("/admin/orders/{order_id}/status")
async def admin_update_order_status(order_id: str, payload: OrderStatusUpdate,
                                    user: dict = Depends(get_admin_manager)):
    return admin_edit_order_doc(order_id, {"status": payload.status})


@app.put("/admin/orders/{order_id}")
async def admin_edit_order(order_id: str, payload: OrderEdit, user: dict = Depends(get_admin_manager)):
    return admin_edit_order_doc(order_id, payload.model_dump(exclude_unset=True))


def admin_edit_order_doc(order_id: str, changes: dict) -> dict:
    oid = to_object_id(order_id, "Order")
    changes = apply_status_change(changes)
    changes["updated_at"] = datetime.utcnow()
    result = db["order"].update_one({"_id": oid}, {"$set": changes})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Order not found")
    if "status" in changes:
        logger.info("order %s status set to %s", order_id, changes["status"])
    return serialize(db["order"].find_one({"_id": oid}))


# Users
@app.get("/admin/users")
async def admin_list_users(user: dict = Depends(get_admin_viewer)):
    items = []
    for u in db["user"].find({}).sort("created_at", -1):
        items.append(public_user(u))
    return {"items": items}


@app.put("/admin/users/{user_id}/role")
async def admin_set_role(user_id: str, payload: RoleUpdate, user: dict = Depends(get_admin_manager)):
    oid = to_object_id(user_id, "User")
    if oid == user["_id"]:
        raise HTTPException(status_code=400, detail="You cannot change your own role")
    result = db["user"].update_one({"_id": oid}, {"$set": {"role": payload.role, "updated_at": datetime.utcnow()}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("user %s role set to %s by %s", user_id, payload.role, user["_id"])
    return public_user(db["user"].find_one({"_id": oid}))


# Optional: seed the furniture catalogue and launch coupons for demo
@app.post("/admin/seed")
async def seed_catalog(user: dict = Depends(get_admin_manager)):
    if db["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    category_ids = {}
    for name, description in [
        ("Living Room", "Sofas, armchairs and coffee tables"),
        ("Dining Room", "Dining tables and chairs"),
        ("Bedroom", "Beds, wardrobes and nightstands"),
        ("Office", "Desks and office seating"),
    ]:
        category_ids[name] = create_document("category", {"name": name, "description": description})
    samples = [
        ("Modern Sectional Sofa", 1599.0, "Living Room", 12,
         "Premium beige fabric with solid walnut legs and removable cushions."),
        ("Walnut Dining Table Set", 899.0, "Dining Room", 8,
         "Solid walnut table that seats 6 people comfortably."),
        ("Luxury Leather Armchair", 899.0, "Living Room", 15,
         "Top-grain leather armchair with a hardwood frame."),
        ("Queen Bedroom Set", 2199.0, "Bedroom", 5,
         "Bed frame, two nightstands and a dresser in oak veneer."),
        ("Executive Office Desk", 749.0, "Office", 20,
         "Spacious desk with cable management and soft-close drawers."),
    ]
    for name, price, category, stock, description in samples:
        create_document("product", Product(name=name, price=price, category_id=category_ids[category],
                                           stock_quantity=stock, description=description))
    for code, name, value in [("SAVE10", "Save 10%", 10), ("WELCOME20", "Welcome offer", 20),
                              ("FURNITURE15", "Furniture week", 15)]:
        create_document("coupon", Coupon(code=code, name=name, discount_type="percentage", discount_value=value))
    return {"seeded": True, "count": len(samples)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
