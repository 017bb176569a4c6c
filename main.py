import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr
from starlette.datastructures import UploadFile as FormFile

import accounts
import catalog
import contacts
import database
import orders
import sliders
import users
from config import CORS_ORIGINS, DATABASE_NAME, DATABASE_URL, LOG_LEVEL, PORT, STORAGE_BACKEND, UPLOAD_DIR
from notifications import build_notifier
from schemas import Address, CustomerInfo, OrderItemRequest
from security import CurrentUser, get_current_user, require_admin
from storage import LOCAL_PREFIX, build_storage

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.storage = build_storage()
    app.state.notifier = build_notifier()
    app.state.notifier.start()
    try:
        database.ensure_indexes()
    except Exception as e:
        logger.error("Could not ensure indexes: %s", e)
    yield
    app.state.notifier.stop()


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if STORAGE_BACKEND == "local":
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    app.mount(LOCAL_PREFIX.rstrip("/"), StaticFiles(directory=UPLOAD_DIR), name="uploads")


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": str(exc) or "Internal server error"})


# Dependencies
def get_db():
    if database.db is None:
        raise HTTPException(500, "Database not configured")
    return database.db


def get_storage(request: Request):
    return request.app.state.storage


def get_notifier(request: Request):
    return request.app.state.notifier


async def read_payload(request: Request):
    """Return (fields, files) from a multipart/urlencoded form or a JSON body."""
    if request.headers.get("content-type", "").startswith("application/json"):
        body = await request.json()
        if not isinstance(body, dict):
            raise HTTPException(400, "Expected a JSON object")
        return body, []
    form = await request.form()
    fields: Dict[str, Any] = {}
    files = []
    for key in form.keys():
        values = form.getlist(key)
        uploads = [v for v in values if isinstance(v, FormFile)]
        files.extend(uploads)
        plain = [v for v in values if not isinstance(v, FormFile)]
        if plain:
            fields[key] = plain if len(plain) > 1 else plain[0]
    return fields, files


# Request bodies
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterRequest(BaseModel):
    username: str
    email: EmailStr
    phone: Optional[str] = None
    password: str


class VerifyOTPRequest(BaseModel):
    email: str
    otp: str


class EmailRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    email: str
    otp: str
    new_password: str


class LoginRequest(BaseModel):
    identifier: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password: str

    @property
    def login(self) -> Optional[str]:
        return self.identifier or self.username or self.email


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None
    is_email_verified: Optional[bool] = None
    password: Optional[str] = None
    current_password: Optional[str] = None


class ContactRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None


class ContactStatusRequest(BaseModel):
    status: str


class ContactReplyRequest(BaseModel):
    reply_message: Optional[str] = None


class ContactNotesRequest(BaseModel):
    notes: Optional[str] = None


class CreateOrderRequest(BaseModel):
    customer_info: CustomerInfo
    items: List[OrderItemRequest] = []
    payment_method: Literal["credit_card", "debit_card", "paypal", "stripe", "cash_on_delivery"] = "cash_on_delivery"
    total: Optional[float] = None
    tax: float = 0
    shipping_cost: float = 0
    discount: float = 0
    billing_address: Optional[Address] = None
    notes: Optional[str] = None


class TrackingInput(BaseModel):
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: str
    tracking: Optional[TrackingInput] = None
    cancel_reason: Optional[str] = None
    notes: Optional[str] = None


class PaymentStatusRequest(BaseModel):
    status: str
    transaction_id: Optional[str] = None


@app.get("/")
def read_root():
    return {"message": "Storefront backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "storage": STORAGE_BACKEND,
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if DATABASE_URL else "❌ Not Set"
            response["database_name"] = "✅ Set" if DATABASE_NAME else "❌ Not Set"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
                response["connection_status"] = "Connected"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# Auth
@app.post("/api/users/register", status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db), notifier=Depends(get_notifier)):
    user = accounts.register(db, notifier, payload.username, payload.email, payload.password, phone=payload.phone)
    return {"message": "Registration successful. Please check your email for the verification code.", "user": user}


@app.post("/api/users/verify-otp")
def verify_otp(payload: VerifyOTPRequest, db=Depends(get_db), notifier=Depends(get_notifier)):
    return accounts.verify_otp(db, notifier, payload.email, payload.otp)


@app.post("/api/users/resend-otp")
def resend_otp(payload: EmailRequest, db=Depends(get_db), notifier=Depends(get_notifier)):
    return accounts.resend_otp(db, notifier, payload.email)


@app.post("/api/users/forgot-password")
def forgot_password(payload: EmailRequest, db=Depends(get_db), notifier=Depends(get_notifier)):
    return accounts.forgot_password(db, notifier, payload.email)


@app.post("/api/users/reset-password")
def reset_password(payload: ResetPasswordRequest, db=Depends(get_db)):
    return accounts.reset_password_with_otp(db, payload.email, payload.otp, payload.new_password)


@app.post("/api/users/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    return accounts.authenticate(db, payload.login, payload.password)


@app.post("/api/admin/login")
def admin_login(payload: LoginRequest, db=Depends(get_db)):
    result = accounts.authenticate(db, payload.login, payload.password, admin_only=True)
    return {"token": result["token"], "admin": result["user"]}


@app.post("/api/token", response_model=Token)
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    result = accounts.authenticate(db, form_data.username, form_data.password)
    return Token(access_token=result["token"])


@app.post("/api/users/change-password")
def change_password(payload: ChangePasswordRequest, current: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return accounts.change_password(db, current.id, payload.current_password, payload.new_password)


# Users
@app.get("/api/users/me")
def me(current: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return {"user": users.get_user(db, current.id)}


@app.get("/api/users")
def list_users(
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    sort_by: str = "created_at",
    sort_order: int = -1,
    admin: CurrentUser = Depends(require_admin),
    db=Depends(get_db),
):
    return users.list_users(db, role=role, is_active=is_active, search=search, limit=limit, skip=skip,
                            sort_by=sort_by, sort_order=sort_order)


@app.get("/api/users/stats")
def user_stats(admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return {"stats": users.user_stats(db)}


@app.get("/api/users/{user_id}")
def get_user(user_id: str, current: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    if current.id != user_id and not current.is_admin:
        raise HTTPException(403, "You can only view your own profile")
    return {"user": users.get_user(db, user_id)}


@app.put("/api/users/{user_id}")
def update_user(user_id: str, payload: UserUpdateRequest, current: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    user = users.update_user(db, user_id, payload.model_dump(exclude_none=True), current)
    return {"message": "User updated successfully", "user": user}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return users.delete_user(db, user_id)


@app.patch("/api/users/{user_id}/toggle-status")
def toggle_user_status(user_id: str, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return users.toggle_user_status(db, user_id)


# Contact inbox
@app.post("/api/contact", status_code=201)
def submit_contact(payload: ContactRequest, db=Depends(get_db)):
    return contacts.create_contact(db, payload.name, payload.email, payload.message, phone=payload.phone, subject=payload.subject)


@app.get("/api/contact")
def list_contacts(
    status: Optional[str] = None,
    replied: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    sort_by: str = "created_at",
    sort_order: int = -1,
    admin: CurrentUser = Depends(require_admin),
    db=Depends(get_db),
):
    return contacts.list_contacts(db, status=status, replied=replied, search=search, limit=limit, skip=skip,
                                  sort_by=sort_by, sort_order=sort_order)


@app.get("/api/contact/stats")
def contact_stats(admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return {"stats": contacts.contact_stats(db)}


@app.get("/api/contact/{contact_id}")
def get_contact(contact_id: str, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return {"contact": contacts.get_contact(db, contact_id)}


@app.patch("/api/contact/{contact_id}/status")
def update_contact_status(contact_id: str, payload: ContactStatusRequest, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return {"message": "Status updated successfully", "contact": contacts.update_contact_status(db, contact_id, payload.status)}


@app.post("/api/contact/{contact_id}/reply")
def reply_to_contact(contact_id: str, payload: ContactReplyRequest, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    contact = contacts.reply_to_contact(db, contact_id, payload.reply_message, admin.id)
    return {"message": "Reply sent successfully", "contact": contact}


@app.patch("/api/contact/{contact_id}/notes")
def update_contact_notes(contact_id: str, payload: ContactNotesRequest, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return {"message": "Notes updated successfully", "contact": contacts.update_contact_notes(db, contact_id, payload.notes)}


@app.delete("/api/contact/{contact_id}")
def delete_contact(contact_id: str, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return contacts.delete_contact(db, contact_id)


# Orders
@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderRequest, current: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    order = orders.create_order(
        db,
        payload.customer_info,
        payload.items,
        payment_method=payload.payment_method,
        total=payload.total,
        user_id=current.id,
        tax=payload.tax,
        shipping_cost=payload.shipping_cost,
        discount=payload.discount,
        billing_address=payload.billing_address,
        notes=payload.notes,
    )
    return {"message": "Order created successfully", "order": order, "order_id": order["id"]}


@app.get("/api/orders")
def list_orders(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    sort_by: str = "created_at",
    sort_order: int = -1,
    admin: CurrentUser = Depends(require_admin),
    db=Depends(get_db),
):
    return orders.list_orders(db, status=status, user_id=user_id, limit=limit, skip=skip, sort_by=sort_by, sort_order=sort_order)


@app.get("/api/orders/stats")
def order_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    admin: CurrentUser = Depends(require_admin),
    db=Depends(get_db),
):
    return {"stats": orders.order_stats(db, start_date=start_date, end_date=end_date, user_id=user_id)}


@app.get("/api/orders/my-orders")
def my_orders(
    status: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    skip: int = Query(0, ge=0),
    current: CurrentUser = Depends(get_current_user),
    db=Depends(get_db),
):
    return orders.get_user_orders(db, current.id, status=status, limit=limit, skip=skip)


@app.get("/api/orders/user/{user_id}")
def user_orders(
    user_id: str,
    status: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    skip: int = Query(0, ge=0),
    current: CurrentUser = Depends(get_current_user),
    db=Depends(get_db),
):
    if current.id != user_id and not current.is_admin:
        raise HTTPException(403, "You can only view your own orders")
    return orders.get_user_orders(db, user_id, status=status, limit=limit, skip=skip)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    order = orders.get_order(db, order_id)
    if order.get("user") != current.id and not current.is_admin:
        raise HTTPException(403, "You do not have permission to view this order")
    return {"order": order}


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusRequest, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    tracking = payload.tracking.model_dump() if payload.tracking else None
    order = orders.update_order_status(db, order_id, payload.status, tracking=tracking,
                                       cancel_reason=payload.cancel_reason, notes=payload.notes)
    return {"message": f"Order status updated to {payload.status}", "order": order}


@app.patch("/api/orders/{order_id}/payment")
def update_payment_status(order_id: str, payload: PaymentStatusRequest, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    order = orders.update_payment_status(db, order_id, payload.status, transaction_id=payload.transaction_id)
    return {"message": "Payment status updated", "order": order}


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return orders.delete_order(db, order_id)


# Catalog
@app.get("/api/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    featured: Optional[bool] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=200),
    sort: Optional[str] = Query(None, description="price_asc|price_desc|rating_desc|best_selling|newest"),
    db=Depends(get_db),
):
    return catalog.list_products(db, q=q, category=category, min_price=min_price, max_price=max_price, status=status,
                                 featured=featured, page=page, limit=limit, sort=sort)


@app.post("/api/products/admin", status_code=201)
async def admin_create_product(request: Request, admin: CurrentUser = Depends(require_admin), db=Depends(get_db), storage=Depends(get_storage)):
    fields, files = await read_payload(request)
    return await run_in_threadpool(catalog.create_product_from_upload, db, storage, fields, files)


@app.post("/api/products", status_code=201)
async def create_product(request: Request, db=Depends(get_db), storage=Depends(get_storage)):
    fields, files = await read_payload(request)
    return await run_in_threadpool(catalog.create_product_from_upload, db, storage, fields, files)


@app.post("/api/products/bulk", status_code=201)
def bulk_insert_products(products: List[Dict[str, Any]] = Body(...), admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    return catalog.insert_many_products(db, products)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return catalog.get_product(db, product_id)


@app.put("/api/products/{product_id}")
async def update_product(product_id: str, request: Request, admin: CurrentUser = Depends(require_admin), db=Depends(get_db), storage=Depends(get_storage)):
    fields, files = await read_payload(request)
    return await run_in_threadpool(catalog.update_product_from_upload, db, storage, product_id, fields, files)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin: CurrentUser = Depends(require_admin), db=Depends(get_db), storage=Depends(get_storage)):
    return catalog.delete_product(db, storage, product_id)


# Sliders
@app.get("/api/sliders")
def list_sliders(active_only: bool = False, db=Depends(get_db)):
    return {"sliders": sliders.list_sliders(db, active_only=active_only)}


@app.post("/api/sliders", status_code=201)
async def create_slider(request: Request, admin: CurrentUser = Depends(require_admin), db=Depends(get_db), storage=Depends(get_storage)):
    fields, files = await read_payload(request)
    slider = await run_in_threadpool(sliders.create_slider, db, storage, fields, files[0] if files else None)
    return {"slider": slider}


@app.put("/api/sliders/{slider_id}")
async def update_slider(slider_id: str, request: Request, admin: CurrentUser = Depends(require_admin), db=Depends(get_db), storage=Depends(get_storage)):
    fields, files = await read_payload(request)
    slider = await run_in_threadpool(sliders.update_slider, db, storage, slider_id, fields, files[0] if files else None)
    return {"slider": slider}


@app.delete("/api/sliders/{slider_id}")
def delete_slider(slider_id: str, admin: CurrentUser = Depends(require_admin), db=Depends(get_db), storage=Depends(get_storage)):
    return sliders.delete_slider(db, storage, slider_id)


# Standalone uploads
@app.post("/api/upload/image")
def upload_image(image: UploadFile = File(...), admin: CurrentUser = Depends(require_admin), storage=Depends(get_storage)):
    return {"message": "Image uploaded successfully", "image": storage.store(image)}


@app.post("/api/upload/images")
def upload_images(images: List[UploadFile] = File(...), admin: CurrentUser = Depends(require_admin), storage=Depends(get_storage)):
    stored = storage.store_many(images)
    if not stored:
        raise HTTPException(400, "No images uploaded")
    return {"message": "Images uploaded successfully", "images": stored, "count": len(stored)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
