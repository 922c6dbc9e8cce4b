import logging
import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import jwt
from fastapi import Depends, FastAPI, Form, Header, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from . import crud, schemas
from .auth import create_access_token, decode_access_token
from .config import get_settings
from .dashboards import DashboardState, dashboard_for, default_view_for
from .db import Base, SessionLocal, engine
from .errors import AuthenticationError, KantinError, PermissionDeniedError, ValidationError
from .models import ORDER_STATUSES
from .session import ClientSession, CookieSessionStore
from .utils import format_rupiah

# handlers belong to the process entry point (uvicorn, kantin-seed)
logging.getLogger("kantin").setLevel(get_settings().log_level)
logger = logging.getLogger(__name__)

# Create tables if not existing (for demo). In production, use Alembic.
Base.metadata.create_all(bind=engine)

app = FastAPI(title="E-Kantin Pintar")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
templates = Jinja2Templates(directory=os.path.join(BASE_DIR, "templates"))
templates.env.filters["rupiah"] = format_rupiah
app.mount("/static", StaticFiles(directory=os.path.join(BASE_DIR, "static")), name="static")

STAFF_ROLES = ("canteen_manager", "admin")


@app.exception_handler(KantinError)
async def kantin_error_handler(request: Request, exc: KantinError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# Dependency to get DB session per request

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(authorization: Optional[str] = Header(default=None), db: Session = Depends(get_db)):
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("missing bearer token")
    token = authorization.split(None, 1)[1]
    try:
        claims = decode_access_token(token)
        user_id = int(claims.get("sub"))
    except (jwt.PyJWTError, TypeError, ValueError):
        raise AuthenticationError("invalid token")
    try:
        return crud.get_user(db, user_id)
    except KantinError:
        raise AuthenticationError("invalid token")


def require_roles(*roles: str):
    def checker(user=Depends(get_current_user)):
        if user.role not in roles:
            raise PermissionDeniedError("forbidden")
        return user
    return checker


def ensure_student_access(db: Session, user, student_id: int, staff: bool = True, own: bool = True) -> None:
    """Raise unless `user` may act on the student record `student_id`.

    Admins always may; canteen managers when `staff`; the student themself
    when `own`; parents when linked to the student.
    """
    student = crud.get_student(db, student_id)
    if user.role == "admin":
        return
    if staff and user.role == "canteen_manager":
        return
    if own and user.role == "student" and student.user_id == user.id:
        return
    if user.role == "parent" and crud.is_parent_of(db, user.id, student.id):
        return
    raise PermissionDeniedError("forbidden")


@app.get("/health")
async def health():
    return {"status": "ok"}


# -------------------- Menu --------------------

@app.get("/menu", response_model=List[schemas.MenuItemRead])
def get_menu_items(db: Session = Depends(get_db)):
    return crud.get_menu_items(db)


@app.get("/menu/all", response_model=List[schemas.MenuItemRead])
def get_all_menu_items(db: Session = Depends(get_db), user=Depends(require_roles(*STAFF_ROLES))):
    return crud.get_all_menu_items(db)


@app.post("/menu", response_model=schemas.MenuItemRead, status_code=201)
def create_menu_item(item: schemas.MenuItemCreate, db: Session = Depends(get_db), user=Depends(require_roles(*STAFF_ROLES))):
    return crud.create_menu_item(db, item)


@app.put("/menu/{item_id}", response_model=schemas.MenuItemRead)
def update_menu_item(item_id: int, payload: schemas.MenuItemChanges, db: Session = Depends(get_db), user=Depends(require_roles(*STAFF_ROLES))):
    # id comes from the path; the body carries only the fields to change
    data = schemas.MenuItemUpdate(id=item_id, **payload.model_dump(exclude_unset=True))
    return crud.update_menu_item(db, data)


# -------------------- Auth & users --------------------

@app.post("/auth/login", response_model=schemas.AuthResponse)
def auth_login(payload: schemas.LoginInput, db: Session = Depends(get_db)):
    user = crud.login(db, payload)
    token = create_access_token(user.id, user.role)
    logger.info("user %s signed in", user.username)
    return {"user": user, "token": token}


@app.get("/auth/me", response_model=schemas.UserRead)
def auth_me(user=Depends(get_current_user)):
    return user


@app.post("/users", response_model=schemas.UserRead, status_code=201)
def create_user(payload: schemas.UserCreate, db: Session = Depends(get_db), user=Depends(require_roles("admin"))):
    return crud.create_user(db, payload)


@app.get("/users", response_model=List[schemas.UserRead])
def list_users(db: Session = Depends(get_db), user=Depends(require_roles("admin"))):
    return crud.list_users(db)


@app.post("/students", response_model=schemas.StudentRead, status_code=201)
def create_student(payload: schemas.StudentCreate, db: Session = Depends(get_db), user=Depends(require_roles("admin"))):
    return crud.create_student(db, payload)


@app.get("/students/{student_id}", response_model=schemas.StudentRead)
def get_student(student_id: int, db: Session = Depends(get_db), user=Depends(get_current_user)):
    ensure_student_access(db, user, student_id)
    return crud.get_student(db, student_id)


@app.put("/students/{student_id}/spending-limit", response_model=schemas.StudentRead)
def update_spending_limit(student_id: int, payload: schemas.SpendingLimitBody, db: Session = Depends(get_db), user=Depends(get_current_user)):
    ensure_student_access(db, user, student_id, staff=False, own=False)
    data = schemas.SpendingLimitUpdate(student_id=student_id, spending_limit=payload.spending_limit)
    return crud.update_spending_limit(db, data)


@app.post("/parents/links", response_model=schemas.ParentStudentRead, status_code=201)
def link_parent_student(payload: schemas.ParentStudentCreate, db: Session = Depends(get_db), user=Depends(require_roles("admin"))):
    return crud.link_parent_student(db, payload)


@app.get("/parents/me/children", response_model=List[schemas.StudentRead])
def my_children(db: Session = Depends(get_db), user=Depends(require_roles("parent"))):
    return crud.list_children(db, user.id)


# -------------------- Orders --------------------

@app.post("/orders", response_model=schemas.OrderDetail, status_code=201)
def create_order(payload: schemas.OrderCreate, db: Session = Depends(get_db), user=Depends(get_current_user)):
    ensure_student_access(db, user, payload.student_id, staff=False)
    order = crud.create_order(db, payload)
    return crud.get_order(db, order.id)


@app.get("/orders", response_model=List[schemas.OrderRead])
def list_orders(
    student_id: Optional[int] = Query(default=None),
    status: Optional[schemas.OrderStatus] = Query(default=None),
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    if user.role == "student":
        own = crud.get_student_for_user(db, user.id)
        if own is None:
            return []
        if student_id is not None and student_id != own.id:
            raise PermissionDeniedError("forbidden")
        student_id = own.id
    elif user.role == "parent":
        if student_id is None:
            raise ValidationError("student_id is required")
        ensure_student_access(db, user, student_id)
    return crud.list_orders(db, student_id=student_id, status=status)


@app.get("/orders/{order_id}", response_model=schemas.OrderDetail)
def get_order(order_id: int, db: Session = Depends(get_db), user=Depends(get_current_user)):
    order = crud.get_order(db, order_id)
    ensure_student_access(db, user, order.student_id)
    return order


@app.put("/orders/{order_id}/status", response_model=schemas.OrderRead)
def update_order_status(order_id: int, payload: schemas.OrderStatusBody, db: Session = Depends(get_db), user=Depends(require_roles(*STAFF_ROLES))):
    data = schemas.OrderStatusUpdate(id=order_id, status=payload.status)
    return crud.update_order_status(db, data)


@app.post("/orders/pickup", response_model=schemas.OrderRead)
def verify_pickup(payload: schemas.PickupInput, db: Session = Depends(get_db), user=Depends(require_roles(*STAFF_ROLES))):
    return crud.verify_pickup(db, payload)


# -------------------- Balance & reports --------------------

@app.post("/balance/topup", response_model=schemas.TransactionRead, status_code=201)
def topup_balance(payload: schemas.TopupInput, db: Session = Depends(get_db), user=Depends(get_current_user)):
    ensure_student_access(db, user, payload.student_id, staff=False, own=False)
    return crud.topup_balance(db, payload)


@app.get("/transactions", response_model=List[schemas.TransactionRead])
def list_transactions(student_id: Optional[int] = Query(default=None), db: Session = Depends(get_db), user=Depends(get_current_user)):
    if student_id is None:
        if user.role not in STAFF_ROLES:
            raise ValidationError("student_id is required")
    else:
        ensure_student_access(db, user, student_id)
    return crud.list_transactions(db, student_id=student_id)


@app.post("/reports", response_model=schemas.ReportRead)
def generate_report(filters: schemas.ReportFilter, db: Session = Depends(get_db), user=Depends(require_roles("parent", *STAFF_ROLES))):
    if user.role == "parent":
        if filters.student_id is None:
            raise ValidationError("student_id is required")
        ensure_student_access(db, user, filters.student_id)
    return crud.generate_report(db, filters)


# -------------------- UI Views --------------------

def _ui_session(request: Request):
    store = CookieSessionStore(request.cookies)
    return store, store.load()


def _login_redirect(store: CookieSessionStore):
    return store.apply(RedirectResponse(url="/ui", status_code=303))


def _render_dashboard(request: Request, db: Session, session: ClientSession, view: Optional[str], error: Optional[str] = None, status_code: int = 200):
    dashboard = dashboard_for(session.user.role)
    state = DashboardState(user=session.user, token=session.token, active_view=view or dashboard.default_view)
    context = dashboard.context(db, state)
    context["error"] = error
    return templates.TemplateResponse(request, "dashboard.html", context, status_code=status_code)


def _parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        raise ValidationError(f"invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"invalid amount: {value!r}")
    return amount


@app.get("/ui", response_class=HTMLResponse)
def ui_index(request: Request, db: Session = Depends(get_db)):
    store, session = _ui_session(request)
    if session is not None:
        return RedirectResponse(url="/ui/dashboard", status_code=303)
    response = templates.TemplateResponse(request, "index.html", {"menu_items": crud.get_menu_items(db), "error": None})
    return store.apply(response)


@app.post("/ui/login")
def ui_login(request: Request, username: str = Form(...), password: str = Form(...), db: Session = Depends(get_db)):
    store = CookieSessionStore(request.cookies)
    try:
        user = crud.login(db, schemas.LoginInput(username=username, password=password))
    except AuthenticationError as e:
        return templates.TemplateResponse(
            request,
            "index.html",
            {"menu_items": crud.get_menu_items(db), "error": str(e)},
            status_code=401,
        )
    auth = schemas.AuthResponse(user=schemas.UserRead.model_validate(user), token=create_access_token(user.id, user.role))
    store.save(auth)
    view = default_view_for(user.role)
    return store.apply(RedirectResponse(url=f"/ui/dashboard?view={view}", status_code=303))


@app.post("/ui/logout")
def ui_logout(request: Request):
    store = CookieSessionStore(request.cookies)
    store.clear()
    return _login_redirect(store)


@app.get("/ui/dashboard", response_class=HTMLResponse)
def ui_dashboard(request: Request, view: Optional[str] = None, db: Session = Depends(get_db)):
    store, session = _ui_session(request)
    if session is None:
        return _login_redirect(store)
    return _render_dashboard(request, db, session, view)


def _ui_action(request: Request, db: Session, view: str, action):
    """Run a dashboard form action; redirect on success, re-render with the error otherwise."""
    store, session = _ui_session(request)
    if session is None:
        return _login_redirect(store)
    try:
        action(session)
    except KantinError as e:
        db.rollback()
        return _render_dashboard(request, db, session, view, error=str(e), status_code=e.status_code)
    return RedirectResponse(url=f"/ui/dashboard?view={view}", status_code=303)


@app.post("/ui/orders")
async def ui_place_order(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    lines = []
    for key, value in form.items():
        if key.startswith("qty_") and str(value).strip() not in ("", "0"):
            try:
                lines.append(schemas.OrderLineInput(menu_item_id=int(key[4:]), quantity=int(value)))
            except ValueError:
                lines = None
                break

    def action(session):
        if not lines:
            raise ValidationError("choose at least one item with a valid quantity")
        student = crud.get_student_for_user(db, session.user.id)
        if student is None:
            raise PermissionDeniedError("only students can place orders here")
        crud.create_order(db, schemas.OrderCreate(student_id=student.id, items=lines))

    return _ui_action(request, db, "orders", action)


@app.post("/ui/topup")
def ui_topup(request: Request, student_id: int = Form(...), amount: str = Form(...), description: str = Form(default=""), db: Session = Depends(get_db)):
    def action(session):
        ensure_student_access(db, session.user, student_id, staff=False, own=False)
        value = _parse_amount(amount)
        if value <= 0:
            raise ValidationError("amount must be positive")
        crud.topup_balance(db, schemas.TopupInput(student_id=student_id, amount=value, description=description or None))

    return _ui_action(request, db, "topup", action)


@app.post("/ui/spending-limit")
def ui_spending_limit(request: Request, student_id: int = Form(...), spending_limit: str = Form(default=""), db: Session = Depends(get_db)):
    def action(session):
        ensure_student_access(db, session.user, student_id, staff=False, own=False)
        limit = _parse_amount(spending_limit) if spending_limit.strip() else None
        if limit is not None and limit <= 0:
            raise ValidationError("spending limit must be positive")
        crud.update_spending_limit(db, schemas.SpendingLimitUpdate(student_id=student_id, spending_limit=limit))

    return _ui_action(request, db, "settings", action)


@app.post("/ui/orders/{order_id}/status")
def ui_order_status(request: Request, order_id: int, status: str = Form(...), db: Session = Depends(get_db)):
    def action(session):
        if session.user.role not in STAFF_ROLES:
            raise PermissionDeniedError("forbidden")
        if status not in ORDER_STATUSES:
            raise ValidationError(f"unknown status: {status}")
        crud.update_order_status(db, schemas.OrderStatusUpdate(id=order_id, status=status))

    return _ui_action(request, db, "orders", action)


@app.post("/ui/pickup")
def ui_pickup(request: Request, qr_code: str = Form(...), db: Session = Depends(get_db)):
    def action(session):
        if session.user.role not in STAFF_ROLES:
            raise PermissionDeniedError("forbidden")
        crud.verify_pickup(db, schemas.PickupInput(qr_code=qr_code.strip()))

    return _ui_action(request, db, "orders", action)
