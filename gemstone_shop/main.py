import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gemstone_shop import __version__, inventory, orders
from gemstone_shop.config import Settings, get_settings, setup_logging
from gemstone_shop.database import Base, engine, get_db, unit_of_work
from gemstone_shop.errors import NotAuthorized, ProductNotFound, ShopError, ShopValidationError, UserNotFound
from gemstone_shop.models import Product, Role, User
from gemstone_shop.security import create_access_token, get_password_hash, verify_password
from gemstone_shop.schemas import (
    AssignDeliveryRequest,
    CreateOrderRequest,
    LoginRequest,
    OrderItemOut,
    OrderOut,
    ProductCreateRequest,
    ProductOut,
    ProfileUpdateRequest,
    RegisterUserRequest,
    SetRoleRequest,
    StockUpdateRequest,
    UpdateStatusRequest,
    UserOut,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(get_settings().log_level)
    Base.metadata.create_all(bind=engine)
    logger.info("Gemstone shop API %s started", __version__)
    yield


app = FastAPI(
    title="Gemstone Shop",
    description="Orders, inventory and delivery assignment for a gemstone and jewelry store",
    version=__version__,
    lifespan=lifespan,
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/users/token")


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, **exc.extra},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


def integrity_error_status(exc: IntegrityError):
    """Map a constraint violation to ``(status_code, message)``."""
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    text = str(orig).lower()
    if code == "23505" or "unique" in text or "duplicate" in text:
        return status.HTTP_409_CONFLICT, "Resource already exists"
    if code == "23503" or "foreign key" in text:
        return status.HTTP_400_BAD_REQUEST, "Referenced resource does not exist"
    return status.HTTP_400_BAD_REQUEST, "Constraint violation"


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    status_code, message = integrity_error_status(exc)
    logger.error("%s %s violated a constraint", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication")
        user = db.query(User).filter(User.id == int(user_id)).first()
        if not user or not user.is_active:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
        return user
    except (JWTError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate token")


def require_roles(*roles: Role):
    allowed = {r.value for r in roles}

    def checker(user: User = Depends(get_current_user)):
        if user.role not in allowed:
            raise NotAuthorized(f"Not authorized as {' or '.join(sorted(allowed))}")
        return user

    return checker


admin_only = require_roles(Role.ADMIN)
manager_or_admin = require_roles(Role.MANAGER, Role.ADMIN)
delivery_only = require_roles(Role.DELIVERY_MAN)


def order_out(order):
    return OrderOut.model_validate(order).model_dump(mode="json")


def items_out(items):
    return [OrderItemOut.model_validate(i).model_dump(mode="json") for i in items]


def listing(rows, serializer=order_out):
    data = [serializer(r) for r in rows]
    return {"success": True, "data": data, "count": len(data)}


@app.get("/api/health", tags=["Root"])
def health():
    return {"status": "ok", "message": "Server is running"}


# Users
@app.post("/api/users/register", tags=["Users"], status_code=status.HTTP_201_CREATED, summary="Register a new user")
def register_user(
    request: RegisterUserRequest, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)
):
    if db.query(User).filter(User.email == request.email).first():
        raise ShopValidationError("User already exists")
    user = User(
        email=request.email,
        password_hash=get_password_hash(request.password),
        full_name=request.full_name,
        phone=request.phone,
        role=Role.CUSTOMER.value,
    )
    with unit_of_work(db):
        db.add(user)
    db.refresh(user)
    logger.info("User #%s registered", user.id)
    data = UserOut.model_validate(user).model_dump(mode="json")
    data["token"] = create_access_token(user, settings)
    return {"success": True, "message": "User registered successfully", "data": data}


@app.post("/api/users/login", tags=["Users"], summary="Log in and receive an access token")
def login(request: LoginRequest, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    user = db.query(User).filter(User.email == request.email).first()
    if not user or not verify_password(request.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not user.is_active:
        raise NotAuthorized("Account is inactive")
    data = UserOut.model_validate(user).model_dump(mode="json")
    return {"success": True, "message": "Login successful", "data": data, "token": create_access_token(user, settings)}


@app.post("/api/users/token", tags=["Authentication"], summary="Generate an access token")
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    # The form's username field carries the email address
    user = db.query(User).filter(User.email == form_data.username).first()
    if not user or not verify_password(form_data.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    if not user.is_active:
        raise NotAuthorized("Account is inactive")
    return {"access_token": create_access_token(user, settings), "token_type": "bearer"}


@app.get("/api/users/me", tags=["Users"], summary="Current user profile")
@app.get("/api/users/profile", tags=["Users"], summary="Current user profile")
def read_me(user: User = Depends(get_current_user)):
    return {"success": True, "data": UserOut.model_validate(user).model_dump(mode="json")}


@app.put("/api/users/profile", tags=["Users"], summary="Update the caller's name and phone")
def update_profile(
    request: ProfileUpdateRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    with unit_of_work(db):
        user.full_name = request.full_name
        user.phone = request.phone
    db.refresh(user)
    logger.info("User #%s updated their profile", user.id)
    return {
        "success": True,
        "message": "Profile updated successfully",
        "data": UserOut.model_validate(user).model_dump(mode="json"),
    }


@app.get("/api/users/all", tags=["Users"], summary="List all users")
def list_users(db: Session = Depends(get_db), _: User = Depends(admin_only)):
    users = db.query(User).order_by(User.created_at.desc(), User.id.desc()).all()
    return listing(users, lambda u: UserOut.model_validate(u).model_dump(mode="json"))


@app.put("/api/users/{user_id}/role", tags=["Users"], summary="Change a user's role")
def set_user_role(user_id: int, request: SetRoleRequest, db: Session = Depends(get_db), _: User = Depends(admin_only)):
    with unit_of_work(db):
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFound("User not found")
        user.role = request.role.value
    db.refresh(user)
    logger.info("User #%s role set to %s", user_id, user.role)
    return {"success": True, "message": "Role updated", "data": UserOut.model_validate(user).model_dump(mode="json")}


# Products
@app.post("/api/products", tags=["Products"], status_code=status.HTTP_201_CREATED, summary="Add a new product")
def add_product(request: ProductCreateRequest, db: Session = Depends(get_db), _: User = Depends(admin_only)):
    product = Product(
        name=request.name,
        type=request.type.value,
        description=request.description,
        price=request.price,
        quantity_in_stock=request.quantity_in_stock,
    )
    with unit_of_work(db):
        db.add(product)
    db.refresh(product)
    return {"success": True, "message": "Product added successfully", "data": ProductOut.model_validate(product).model_dump(mode="json")}


@app.get("/api/products/{product_id}", tags=["Products"], summary="Get a product")
def get_product(product_id: int, db: Session = Depends(get_db)):
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise ProductNotFound(product_id)
    return {"success": True, "data": ProductOut.model_validate(product).model_dump(mode="json")}


@app.put("/api/products/{product_id}/stock", tags=["Products"], summary="Set a product's stock level")
def restock_product(
    product_id: int, request: StockUpdateRequest, db: Session = Depends(get_db), _: User = Depends(admin_only)
):
    with unit_of_work(db):
        product = db.query(Product).filter(Product.id == product_id).with_for_update().first()
        if not product:
            raise ProductNotFound(product_id)
        product.quantity_in_stock = request.quantity_in_stock
    db.refresh(product)
    logger.info("Product #%s restocked to %s", product_id, product.quantity_in_stock)
    return {"success": True, "message": "Stock updated", "data": ProductOut.model_validate(product).model_dump(mode="json")}


# Orders: listings
@app.get("/api/orders/all", tags=["Orders"], summary="List all orders")
def list_all_orders(db: Session = Depends(get_db), _: User = Depends(manager_or_admin)):
    return listing(orders.list_orders(db))


@app.get("/api/orders/my-orders", tags=["Orders"], summary="List the caller's orders")
def list_my_orders(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return listing(orders.list_user_orders(db, user.id))


@app.get("/api/orders/delivery/my-deliveries", tags=["Delivery"], summary="Orders assigned to the caller")
def list_my_deliveries(db: Session = Depends(get_db), user: User = Depends(delivery_only)):
    return listing(orders.list_my_deliveries(db, user.id))


@app.get("/api/orders/manager/pending", tags=["Delivery"], summary="Confirmed orders awaiting a delivery man")
def list_pending_orders(db: Session = Depends(get_db), _: User = Depends(manager_or_admin)):
    return listing(orders.list_assignable_orders(db))


@app.get("/api/orders/manager/delivery-men", tags=["Delivery"], summary="List delivery men")
def list_delivery_men(db: Session = Depends(get_db), _: User = Depends(manager_or_admin)):
    return listing(orders.list_delivery_men(db), lambda u: UserOut.model_validate(u).model_dump(mode="json"))


@app.get("/api/orders/manager/delivery-man/{delivery_man_id}", tags=["Delivery"], summary="Orders of a delivery man")
def list_delivery_man_orders(delivery_man_id: int, db: Session = Depends(get_db), _: User = Depends(manager_or_admin)):
    return listing(orders.list_delivery_man_orders(db, delivery_man_id))


@app.get("/api/orders/inventory/low-stock", tags=["Inventory"], summary="Products running low on stock")
def low_stock(threshold: Optional[int] = None, db: Session = Depends(get_db), _: User = Depends(admin_only)):
    report = inventory.low_stock_report(db, threshold)
    return {"success": True, **report}


# Orders: single order
@app.get("/api/orders/{order_id}", tags=["Orders"], summary="Get an order")
def get_order(order_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    order = orders.get_order(db, order_id)
    if not orders.can_view_order(order, user):
        raise NotAuthorized("Not authorized to view this order")
    return {"success": True, "data": order_out(order)}


@app.get("/api/orders/{order_id}/items", tags=["Orders"], summary="Get the items of an order")
def get_order_items(order_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    order = orders.get_order(db, order_id)
    if not orders.can_view_order(order, user):
        raise NotAuthorized("Not authorized to view these order items")
    items = items_out(order.items)
    return {"success": True, "data": items, "count": len(items)}


@app.post("/api/orders", tags=["Orders"], status_code=status.HTTP_201_CREATED, summary="Create a new order")
def create_order(
    request: CreateOrderRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    new_order = orders.NewOrder(
        user_id=user.id,
        total_amount=request.total_amount,
        tax_amount=request.tax_amount,
        shipping_cost=request.shipping_cost,
        discount_amount=request.discount_amount,
        shipping_address_id=request.shipping_address_id,
        billing_address_id=request.billing_address_id,
        notes=request.notes,
        order_number=request.order_number,
        items=[orders.NewOrderItem(i.product_id, i.quantity, i.price_at_purchase) for i in request.order_items],
    )
    created = orders.create_order(db, new_order)
    data = order_out(created.order)
    data["items"] = items_out(created.order.items)
    return {
        "success": True,
        "message": "Order created successfully",
        "data": data,
        "low_stock_warnings": created.low_stock_warnings,
    }


@app.put("/api/orders/{order_id}/status", tags=["Orders"], summary="Update the status of an order")
def update_order_status(
    order_id: int, request: UpdateStatusRequest, db: Session = Depends(get_db), _: User = Depends(admin_only)
):
    change = orders.update_order_status(db, order_id, request.status, request.tracking_number)
    return {
        "success": True,
        "message": "Order status updated successfully",
        "data": order_out(change.order),
        "previous_status": change.previous_status,
        "stock_restored": change.stock_restored,
    }


@app.delete("/api/orders/{order_id}", tags=["Orders"], summary="Delete an order")
def delete_order(order_id: int, db: Session = Depends(get_db), _: User = Depends(admin_only)):
    stock_restored = orders.delete_order(db, order_id)
    return {"success": True, "message": "Order deleted successfully", "stock_restored": stock_restored}


@app.put("/api/orders/{order_id}/assign-delivery", tags=["Delivery"], summary="Assign an order to a delivery man")
def assign_delivery(
    order_id: int, request: AssignDeliveryRequest, db: Session = Depends(get_db), _: User = Depends(manager_or_admin)
):
    order = orders.assign_delivery(db, order_id, request.delivery_man_id)
    return {"success": True, "message": "Order assigned to delivery man successfully", "data": order_out(order)}


@app.put("/api/orders/{order_id}/unassign-delivery", tags=["Delivery"], summary="Unassign an order")
def unassign_delivery(order_id: int, db: Session = Depends(get_db), _: User = Depends(manager_or_admin)):
    order = orders.unassign_delivery(db, order_id)
    return {"success": True, "message": "Order unassigned from delivery man successfully", "data": order_out(order)}
