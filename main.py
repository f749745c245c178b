import logging
import os
from contextlib import asynccontextmanager, contextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, ValidationError, model_validator
from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import settings
from auth import (
    FORBIDDEN,
    RESET_PASSWORD,
    VERIFY_ACCOUNT,
    create_token,
    decode_link_token,
    hash_password,
    restrict_to,
    verify_password,
)
from database import create_document, get_db, get_documents, now, parse_object_id, start_transaction, to_public
from orders import InvalidProductId, ProductNotFound, create_order
from schemas import DEFAULT_AVATAR, Category, Product as ProductSchema, User as UserSchema
from storage import process_image
from tasks import CRITICAL_QUEUE, EnqueueError, PayloadSendMail, PayloadUploadImage, TaskDistributor, TaskOptions

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.setup_logging()
    yield


app = FastAPI(title="Coffee Shop API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --------------------- Errors ---------------------


@app.exception_handler(StarletteHTTPException)
def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"status": "failed", "error": exc.detail}, status_code=exc.status_code,
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_error(request: Request, exc: RequestValidationError):
    message = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse({"status": "failed", "error": f"invalid data input for operation: {message}"},
                        status_code=400)


@contextmanager
def translate_errors():
    """Map store and broker failures raised inside the block to HTTP errors."""
    try:
        yield
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="document already exists")
    except EnqueueError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except PyMongoError as e:
        logger.exception("database error")
        raise HTTPException(status_code=500, detail=f"internal server error: {e}")


def invalid_input(e: ValidationError) -> HTTPException:
    return HTTPException(status_code=400, detail=f"invalid data input for operation: {e.errors()[0]['msg']}")


# --------------------- Dependencies ---------------------

_distributor: Optional[TaskDistributor] = None


def get_distributor() -> TaskDistributor:
    global _distributor
    if _distributor is None:
        _distributor = TaskDistributor.from_settings()
    return _distributor


def has_file(upload: Optional[UploadFile]) -> bool:
    return upload is not None and bool(upload.filename)


# --------------------- Models ---------------------


class SignupRequest(BaseModel):
    username: str = Field(min_length=1)
    email: EmailStr
    phone_number: str = Field(min_length=1)
    password: str = Field(min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    password: str = Field(min_length=6)
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class OrderLine(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    items: List[OrderLine] = Field(..., min_length=1)


# --------------------- Routes ---------------------


@app.get("/")
def root():
    return {"message": "Coffee Shop API is running"}


# Products
@app.get("/products")
def list_products(category: Optional[Category] = None, db: Database = Depends(get_db)):
    query: Dict[str, Any] = {"category": category} if category else {}
    with translate_errors():
        docs = get_documents(db, "product", query, newest_first=True)
    return {"status": "success", "results": len(docs), "data": [to_public(d) for d in docs]}


@app.get("/products/{category}/{product_id}")
def get_product(category: str, product_id: str, db: Database = Depends(get_db)):
    oid = parse_object_id(product_id, "product")
    with translate_errors():
        doc = db["product"].find_one({"_id": oid, "category": category})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"status": "success", "data": to_public(doc)}


@app.post("/products", status_code=201)
def create_product(
    name: str = Form(...),
    price: float = Form(..., ge=0),
    discount: float = Form(0, ge=0, le=100),
    summary: str = Form(...),
    description: str = Form(...),
    category: Category = Form(...),
    ingredients: str = Form(""),
    thumbnail: Optional[UploadFile] = File(None),
    images: Optional[List[UploadFile]] = File(None),
    user: dict = Depends(restrict_to("admin")),
    db: Database = Depends(get_db),
    distributor: TaskDistributor = Depends(get_distributor),
):
    try:
        product = ProductSchema(
            name=name,
            price=price,
            discount=discount,
            summary=summary,
            description=description,
            category=category,
            ingredients=[i.strip() for i in ingredients.split(",") if i.strip()],
            author=str(user["_id"]),
        )
    except ValidationError as e:
        raise invalid_input(e)

    thumbnail_payload = None
    if has_file(thumbnail):
        data, file_name, extension = process_image(thumbnail)
        product.thumbnail = f"images/products/thumbnails/{file_name}"
        thumbnail_payload = PayloadUploadImage.from_bytes(product.thumbnail, extension, data)

    image_payloads = []
    for upload in images or []:
        if not has_file(upload):
            continue
        data, file_name, extension = process_image(upload)
        object_key = f"images/products/{category}/{file_name}"
        product.images.append(object_key)
        image_payloads.append(PayloadUploadImage.from_bytes(object_key, extension, data))

    opts = TaskOptions(max_retry=3, process_in=timedelta(seconds=2), queue=CRITICAL_QUEUE)
    # Uploads are queued before the commit: an unreachable broker rolls the insert back.
    with translate_errors(), start_transaction(db) as session:
        db["product"].create_index([("name", ASCENDING)], unique=True, session=session)
        product_id = create_document(db, "product", product, session=session)
        doc = db["product"].find_one({"_id": ObjectId(product_id)}, session=session)
        if thumbnail_payload:
            distributor.upload_s3_object(thumbnail_payload, opts)
        if image_payloads:
            distributor.upload_multiple_s3_objects(image_payloads, opts)

    logger.info("product %s created by %s", product_id, user["_id"])
    return {"status": "success", "data": to_public(doc)}


@app.put("/products/{product_id}")
def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    price: Optional[float] = Form(None, ge=0),
    discount: Optional[float] = Form(None, ge=0, le=100),
    summary: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    ingredients: Optional[str] = Form(None),
    thumbnail: Optional[UploadFile] = File(None),
    user: dict = Depends(restrict_to("admin")),
    db: Database = Depends(get_db),
    distributor: TaskDistributor = Depends(get_distributor),
):
    oid = parse_object_id(product_id, "product")
    with translate_errors():
        existing = db["product"].find_one({"_id": oid})
    if not existing:
        raise HTTPException(status_code=404, detail="Product not found")

    fields = {"name": name, "price": price, "discount": discount, "summary": summary, "description": description}
    updates: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    if ingredients is not None:
        updates["ingredients"] = [i.strip() for i in ingredients.split(",") if i.strip()]

    thumbnail_payload = None
    if has_file(thumbnail):
        data, file_name, extension = process_image(thumbnail)
        updates["thumbnail"] = f"images/products/thumbnails/{file_name}"
        thumbnail_payload = PayloadUploadImage.from_bytes(updates["thumbnail"], extension, data)

    updates["updated_at"] = now()
    with translate_errors(), start_transaction(db) as session:
        doc = db["product"].find_one_and_update(
            {"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER, session=session
        )
        if not doc:
            raise HTTPException(status_code=404, detail="Product not found")
        if thumbnail_payload:
            if existing.get("thumbnail"):
                distributor.delete_s3_objects(
                    [existing["thumbnail"]],
                    TaskOptions(max_retry=3, process_in=timedelta(minutes=3), queue=CRITICAL_QUEUE),
                )
            distributor.upload_s3_object(
                thumbnail_payload, TaskOptions(max_retry=3, process_in=timedelta(seconds=2), queue=CRITICAL_QUEUE)
            )

    return {"status": "success", "data": to_public(doc)}


@app.delete("/products/{product_id}", status_code=204)
def delete_product(
    product_id: str,
    user: dict = Depends(restrict_to("admin")),
    db: Database = Depends(get_db),
    distributor: TaskDistributor = Depends(get_distributor),
):
    oid = parse_object_id(product_id, "product")
    with translate_errors(), start_transaction(db) as session:
        doc = db["product"].find_one_and_delete({"_id": oid}, session=session)
        if not doc:
            raise HTTPException(status_code=404, detail="Product not found")
        object_keys = list(doc.get("images") or [])
        if doc.get("thumbnail"):
            object_keys.append(doc["thumbnail"])
        if object_keys:
            distributor.delete_s3_objects(
                object_keys, TaskOptions(max_retry=3, process_in=timedelta(minutes=1), queue=CRITICAL_QUEUE)
            )
    logger.info("product %s deleted by %s", product_id, user["_id"])
    return Response(status_code=204)


# Auth
@app.post("/signup", status_code=201)
def signup(req: SignupRequest, db: Database = Depends(get_db),
           distributor: TaskDistributor = Depends(get_distributor)):
    user = UserSchema(
        username=req.username,
        email=req.email,
        phone_number=req.phone_number,
        password_hash=hash_password(req.password),
    )
    with translate_errors(), start_transaction(db) as session:
        db["user"].create_index([("email", ASCENDING)], unique=True, session=session)
        db["user"].create_index([("username", ASCENDING)], unique=True, session=session)
        user_id = create_document(db, "user", user, session=session)
        doc = db["user"].find_one({"_id": ObjectId(user_id)}, session=session)
        distributor.send_verification_mail(
            PayloadSendMail(email=user.email),
            TaskOptions(max_retry=3, process_in=timedelta(seconds=3), queue=CRITICAL_QUEUE),
        )

    logger.info("user %s signed up", user_id)
    return {"status": "success", "token": create_token(user_id, user.email), "data": to_public(doc)}


@app.post("/login")
def login(req: LoginRequest, db: Database = Depends(get_db)):
    with translate_errors():
        user = db["user"].find_one({"email": req.email})
    if not user:
        raise HTTPException(status_code=404, detail="document not found")
    if not verify_password(req.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="invalid user password or email address")
    return {"status": "success", "token": create_token(str(user["_id"]), user["email"])}


@app.post("/forgotpassword")
def forgot_password(req: ForgotPasswordRequest, db: Database = Depends(get_db),
                    distributor: TaskDistributor = Depends(get_distributor)):
    with translate_errors():
        user = db["user"].find_one({"email": req.email})
        if not user:
            raise HTTPException(status_code=404, detail="document not found")
        distributor.send_password_reset_mail(
            PayloadSendMail(email=user["email"]),
            TaskOptions(max_retry=10, process_in=timedelta(minutes=1), queue=CRITICAL_QUEUE),
        )
    return {"status": "success", "data": "URL to reset your password sent to your email"}


@app.put("/resetpassword")
def reset_password(req: ResetPasswordRequest, token: str = Query(...), db: Database = Depends(get_db)):
    oid = parse_object_id(decode_link_token(token, RESET_PASSWORD), "user")
    changed_at = now()
    update = {"$set": {"password_hash": hash_password(req.password),
                       "password_changed_at": changed_at, "updated_at": changed_at}}
    with translate_errors():
        user = db["user"].find_one_and_update({"_id": oid}, update)
    if not user:
        raise HTTPException(status_code=404, detail="document not found")
    return {"status": "success"}


@app.get("/verify")
def verify_account(token: str = Query(...), db: Database = Depends(get_db)):
    oid = parse_object_id(decode_link_token(token, VERIFY_ACCOUNT), "user")
    with translate_errors():
        user = db["user"].find_one_and_update({"_id": oid}, {"$set": {"verified": True, "updated_at": now()}})
    if not user:
        raise HTTPException(status_code=404, detail="document not found")
    return {"status": "success", "data": "account verified"}


# Users
@app.get("/users")
def list_users(user: dict = Depends(restrict_to("admin")), db: Database = Depends(get_db)):
    with translate_errors():
        docs = get_documents(db, "user")
    return {"status": "success", "results": len(docs), "data": [to_public(d) for d in docs]}


@app.get("/users/{user_id}")
def get_user(user_id: str, user: dict = Depends(restrict_to("admin", "user")), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user")
    if oid != user["_id"] and user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="user only allowed to retrieve their own account")
    with translate_errors():
        doc = db["user"].find_one({"_id": oid})
    if not doc:
        raise HTTPException(status_code=404, detail="document not found")
    return {"status": "success", "data": to_public(doc)}


@app.put("/users/{user_id}")
def update_user(
    user_id: str,
    username: Optional[str] = Form(None),
    phone_number: Optional[str] = Form(None),
    avatar: Optional[UploadFile] = File(None),
    user: dict = Depends(restrict_to("admin", "user")),
    db: Database = Depends(get_db),
    distributor: TaskDistributor = Depends(get_distributor),
):
    oid = parse_object_id(user_id, "user")
    if oid != user["_id"]:
        raise HTTPException(status_code=403, detail="user only allowed to update their own account")

    updates: Dict[str, Any] = {}
    if username:
        updates["username"] = username
    if phone_number:
        updates["phone_number"] = phone_number

    avatar_payload = None
    if has_file(avatar):
        data, file_name, extension = process_image(avatar)
        updates["avatar"] = f"images/avatars/{file_name}"
        avatar_payload = PayloadUploadImage.from_bytes(updates["avatar"], extension, data)

    updates["updated_at"] = now()
    with translate_errors(), start_transaction(db) as session:
        doc = db["user"].find_one_and_update(
            {"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER, session=session
        )
        if not doc:
            raise HTTPException(status_code=404, detail="document not found")
        if avatar_payload:
            distributor.upload_s3_object(
                avatar_payload, TaskOptions(max_retry=3, process_in=timedelta(seconds=1), queue=CRITICAL_QUEUE)
            )
            if user.get("avatar") and user["avatar"] != DEFAULT_AVATAR:
                distributor.delete_s3_objects(
                    [user["avatar"]], TaskOptions(max_retry=3, process_in=timedelta(minutes=3), queue=CRITICAL_QUEUE)
                )

    return {"status": "success", "data": to_public(doc)}


@app.delete("/users/{user_id}", status_code=204)
def delete_user(
    user_id: str,
    user: dict = Depends(restrict_to("admin", "user")),
    db: Database = Depends(get_db),
    distributor: TaskDistributor = Depends(get_distributor),
):
    oid = parse_object_id(user_id, "user")
    if oid != user["_id"]:
        raise HTTPException(status_code=403, detail=FORBIDDEN)
    with translate_errors(), start_transaction(db) as session:
        doc = db["user"].find_one_and_delete({"_id": oid}, session=session)
        if not doc:
            raise HTTPException(status_code=404, detail="document not found")
        if doc.get("avatar") and doc["avatar"] != DEFAULT_AVATAR:
            distributor.delete_s3_objects([doc["avatar"]], TaskOptions(max_retry=3, queue=CRITICAL_QUEUE))
    logger.info("user %s deleted their account", user_id)
    return Response(status_code=204)


# Orders
@app.post("/products/orders", status_code=201)
def place_order(body: OrderCreate, user: dict = Depends(restrict_to("user", "admin")),
                db: Database = Depends(get_db)):
    lines = [(line.product, line.quantity) for line in body.items]
    try:
        with translate_errors():
            order = create_order(db, str(user["_id"]), lines)
    except InvalidProductId as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProductNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "success", "data": to_public(order)}


@app.get("/orders")
def my_orders(user: dict = Depends(restrict_to("user", "admin")), db: Database = Depends(get_db)):
    with translate_errors():
        docs = get_documents(db, "order", {"owner": str(user["_id"])}, limit=50, newest_first=True)
    return {"status": "success", "results": len(docs), "data": [to_public(d) for d in docs]}


@app.get("/test")
def test_services(distributor: TaskDistributor = Depends(get_distributor)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "broker": "❌ Not Available",
        "collections": []
    }
    db = database.db
    if db is not None:
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    try:
        distributor.connection.ping()
        response["broker"] = "✅ Connected"
    except Exception as e:
        response["broker"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
