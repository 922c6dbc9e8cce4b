import logging
import secrets
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from . import models, schemas
from .auth import hash_password, verify_password
from .errors import (
    AuthenticationError,
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    SpendingLimitError,
    ValidationError,
)
from .utils import sanitize_text

logger = logging.getLogger(__name__)

OPENING_BALANCE_DESCRIPTION = "Opening balance"

# Business rule: money stored rounded to 2 decimals

def round_amount(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning("integrity error while %s: %s", what, e.orig)
        raise ConflictError(f"{what}: integrity error") from e


# -------------------- Menu --------------------

def get_menu_items(db: Session) -> List[models.MenuItem]:
    """Available menu items, ordered by category then name."""
    try:
        stmt = (
            select(models.MenuItem)
            .where(models.MenuItem.is_available.is_(True))
            .order_by(models.MenuItem.category, models.MenuItem.name)
        )
        return list(db.scalars(stmt))
    except Exception:
        logger.exception("failed to fetch menu items")
        raise


def get_all_menu_items(db: Session) -> List[models.MenuItem]:
    stmt = select(models.MenuItem).order_by(models.MenuItem.category, models.MenuItem.name)
    return list(db.scalars(stmt))


def get_menu_item(db: Session, item_id: int) -> models.MenuItem:
    item = db.get(models.MenuItem, item_id)
    if not item:
        raise NotFoundError(f"menu item {item_id} not found")
    return item


def _clean_name(value: str) -> str:
    name = sanitize_text(value)
    if not name:
        raise ValidationError("name is required")
    return name


def create_menu_item(db: Session, data: schemas.MenuItemCreate) -> models.MenuItem:
    item = models.MenuItem(
        name=_clean_name(data.name),
        description=sanitize_text(data.description),
        price=round_amount(data.price),
        category=data.category,
        image_url=data.image_url,
        is_available=data.is_available,
        stock_quantity=data.stock_quantity,
    )
    db.add(item)
    _commit(db, "creating menu item")
    db.refresh(item)
    return item


def update_menu_item(db: Session, data: schemas.MenuItemUpdate) -> models.MenuItem:
    item = get_menu_item(db, data.id)
    changes = data.model_dump(exclude_unset=True, exclude={"id"})
    for field, value in changes.items():
        if field == "name":
            value = _clean_name(value or "")
        elif field == "description":
            value = sanitize_text(value)
        elif field == "price":
            if value is None:
                raise ValidationError("price cannot be null")
            value = round_amount(value)
        elif value is None and field in ("category", "is_available", "stock_quantity"):
            raise ValidationError(f"{field} cannot be null")
        setattr(item, field, value)
    _commit(db, "updating menu item")
    db.refresh(item)
    return item


# -------------------- Users & auth --------------------

def create_user(db: Session, data: schemas.UserCreate) -> models.User:
    user = models.User(
        username=data.username,
        email=str(data.email),
        password_hash=hash_password(data.password),
        role=data.role,
        full_name=data.full_name,
        phone=data.phone,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("username or email already exists") from e
    db.refresh(user)
    return user


def list_users(db: Session) -> List[models.User]:
    return list(db.scalars(select(models.User).order_by(models.User.id)))


def get_user(db: Session, user_id: int) -> models.User:
    user = db.get(models.User, user_id)
    if not user:
        raise NotFoundError(f"user {user_id} not found")
    return user


def login(db: Session, data: schemas.LoginInput) -> models.User:
    """Return the user for valid credentials.

    The password is checked against its passlib hash; callers issue a JWT
    for the returned user. Unknown usernames and wrong passwords raise the
    same error so callers cannot tell which usernames exist.
    """
    user = db.scalars(select(models.User).where(models.User.username == data.username).limit(1)).first()
    if user is None or not verify_password(data.password, user.password_hash):
        logger.warning("failed login for username=%r", data.username)
        raise AuthenticationError("Invalid username or password")
    return user


# -------------------- Students & parents --------------------

def create_student(db: Session, data: schemas.StudentCreate) -> models.Student:
    user = get_user(db, data.user_id)
    if user.role != "student":
        raise ValidationError("user must have role 'student'")
    student = models.Student(
        user_id=user.id,
        student_id=data.student_id,
        class_name=data.class_name,
        balance=Decimal("0"),
        spending_limit=round_amount(data.spending_limit) if data.spending_limit is not None else None,
    )
    db.add(student)
    try:
        db.flush()
        open_balance(db, student, data.balance)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("student id already exists") from e
    db.refresh(student)
    return student


def get_student(db: Session, student_id: int) -> models.Student:
    student = db.get(models.Student, student_id)
    if not student:
        raise NotFoundError(f"student {student_id} not found")
    return student


def get_student_for_user(db: Session, user_id: int) -> Optional[models.Student]:
    return db.scalars(select(models.Student).where(models.Student.user_id == user_id)).first()


def list_students(db: Session) -> List[models.Student]:
    return list(db.scalars(select(models.Student).order_by(models.Student.id)))


def link_parent_student(db: Session, data: schemas.ParentStudentCreate) -> models.ParentStudent:
    parent = get_user(db, data.parent_id)
    if parent.role != "parent":
        raise ValidationError("user must have role 'parent'")
    get_student(db, data.student_id)
    link = models.ParentStudent(parent_id=parent.id, student_id=data.student_id)
    db.add(link)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("parent is already linked to this student") from e
    db.refresh(link)
    return link


def list_children(db: Session, parent_id: int) -> List[models.Student]:
    stmt = (
        select(models.Student)
        .join(models.ParentStudent, models.ParentStudent.student_id == models.Student.id)
        .where(models.ParentStudent.parent_id == parent_id)
        .order_by(models.Student.id)
    )
    return list(db.scalars(stmt))


def is_parent_of(db: Session, parent_id: int, student_id: int) -> bool:
    stmt = select(models.ParentStudent.id).where(
        models.ParentStudent.parent_id == parent_id,
        models.ParentStudent.student_id == student_id,
    )
    return db.scalars(stmt).first() is not None


# -------------------- Ledger --------------------

def add_transaction(db: Session, student: models.Student, data: schemas.TransactionCreate) -> models.Transaction:
    """Stage a ledger row and move the student's balance by the same amount.

    The caller commits; balance and ledger always change together.
    """
    amount = round_amount(data.amount)
    txn = models.Transaction(
        student_id=student.id,
        order_id=data.order_id,
        type=data.type,
        amount=amount,
        description=sanitize_text(data.description),
    )
    student.balance = round_amount(Decimal(student.balance) + amount)
    db.add(txn)
    return txn


def open_balance(db: Session, student: models.Student, amount) -> Optional[models.Transaction]:
    """Stage the opening top-up for a new student; nothing for a zero balance."""
    amount = round_amount(amount or 0)
    if amount <= 0:
        return None
    return add_transaction(
        db,
        student,
        schemas.TransactionCreate(
            student_id=student.id,
            type="topup",
            amount=amount,
            description=OPENING_BALANCE_DESCRIPTION,
        ),
    )


def topup_balance(db: Session, data: schemas.TopupInput) -> models.Transaction:
    student = get_student(db, data.student_id)
    txn = add_transaction(
        db,
        student,
        schemas.TransactionCreate(
            student_id=student.id,
            type="topup",
            amount=data.amount,
            description=data.description or "Balance top-up",
        ),
    )
    _commit(db, "topping up balance")
    db.refresh(txn)
    logger.info("topup student=%s amount=%s", student.id, txn.amount)
    return txn


def update_spending_limit(db: Session, data: schemas.SpendingLimitUpdate) -> models.Student:
    student = get_student(db, data.student_id)
    student.spending_limit = round_amount(data.spending_limit) if data.spending_limit is not None else None
    _commit(db, "updating spending limit")
    db.refresh(student)
    return student


def list_transactions(db: Session, student_id: Optional[int] = None) -> List[models.Transaction]:
    stmt = select(models.Transaction)
    if student_id is not None:
        stmt = stmt.where(models.Transaction.student_id == student_id)
    stmt = stmt.order_by(models.Transaction.created_at.desc(), models.Transaction.id.desc())
    return list(db.scalars(stmt))


def recompute_balance(db: Session, student_id: int) -> Decimal:
    """Balance derived from the ledger alone."""
    get_student(db, student_id)
    total = db.scalar(
        select(func.coalesce(func.sum(models.Transaction.amount), 0)).where(
            models.Transaction.student_id == student_id
        )
    )
    return round_amount(Decimal(str(total)))


# -------------------- Orders --------------------

def _new_qr_code(order_id: int) -> str:
    return f"EKP-{order_id}-{secrets.token_hex(8).upper()}"


def create_order(db: Session, data: schemas.OrderCreate) -> models.Order:
    student = get_student(db, data.student_id)

    # merge repeated lines for the same menu item
    quantities: Dict[int, int] = {}
    for line in data.items:
        quantities[line.menu_item_id] = quantities.get(line.menu_item_id, 0) + line.quantity
    if not quantities:
        raise ValidationError("order must contain at least one item")

    lines = []
    total = Decimal("0")
    for menu_item_id, quantity in quantities.items():
        item = get_menu_item(db, menu_item_id)
        if not item.is_available:
            raise ValidationError(f"{item.name} is not available")
        if item.stock_quantity < quantity:
            raise ValidationError(f"not enough stock for {item.name}: {item.stock_quantity} left")
        unit_price = round_amount(item.price)
        line_total = round_amount(unit_price * quantity)
        lines.append((item, quantity, unit_price, line_total))
        total += line_total
    total = round_amount(total)

    balance = Decimal(student.balance)
    if balance < total:
        raise InsufficientFundsError(f"insufficient balance: {balance} available, {total} required")
    if student.spending_limit is not None and total > Decimal(student.spending_limit):
        raise SpendingLimitError(f"order total {total} exceeds spending limit {student.spending_limit}")

    order = models.Order(student_id=student.id, total_amount=total, status="pending")
    db.add(order)
    db.flush()
    order.qr_code = _new_qr_code(order.id)

    for item, quantity, unit_price, line_total in lines:
        db.add(models.OrderItem(
            order_id=order.id,
            menu_item_id=item.id,
            quantity=quantity,
            unit_price=unit_price,
            total_price=line_total,
        ))
        item.stock_quantity -= quantity

    add_transaction(
        db,
        student,
        schemas.TransactionCreate(
            student_id=student.id,
            order_id=order.id,
            type="purchase",
            amount=-total,
            description=f"Order #{order.id}",
        ),
    )
    _commit(db, "placing order")
    db.refresh(order)
    logger.info("order %s placed by student=%s total=%s", order.id, student.id, order.total_amount)
    return order


def get_order(db: Session, order_id: int) -> models.Order:
    stmt = select(models.Order).options(selectinload(models.Order.items)).where(models.Order.id == order_id)
    order = db.scalars(stmt).first()
    if not order:
        raise NotFoundError(f"order {order_id} not found")
    return order


def list_orders(db: Session, student_id: Optional[int] = None, status: Optional[str] = None) -> List[models.Order]:
    stmt = select(models.Order)
    if student_id is not None:
        stmt = stmt.where(models.Order.student_id == student_id)
    if status is not None:
        stmt = stmt.where(models.Order.status == status)
    stmt = stmt.order_by(models.Order.created_at.desc(), models.Order.id.desc())
    return list(db.scalars(stmt))


def _release_order(db: Session, order: models.Order) -> Optional[models.Transaction]:
    """Refund a cancelled order and put its items back in stock.

    Runs once per order: a second cancel finds the refund row and does nothing.
    """
    already = db.scalars(
        select(models.Transaction.id).where(
            models.Transaction.order_id == order.id,
            models.Transaction.type == "refund",
        )
    ).first()
    if already is not None:
        return None
    paid = db.scalar(
        select(func.coalesce(func.sum(models.Transaction.amount), 0)).where(
            models.Transaction.order_id == order.id,
            models.Transaction.type == "purchase",
        )
    )
    paid = round_amount(Decimal(str(paid)))
    if paid >= 0:
        return None
    for line in order.items:
        line.menu_item.stock_quantity += line.quantity
    return add_transaction(
        db,
        order.student,
        schemas.TransactionCreate(
            student_id=order.student_id,
            order_id=order.id,
            type="refund",
            amount=-paid,
            description=f"Refund for order #{order.id}",
        ),
    )


def update_order_status(db: Session, data: schemas.OrderStatusUpdate) -> models.Order:
    """Set an order's status; any status may follow any other.

    Entering 'cancelled' refunds the purchase and restocks its items once.
    Entering 'ready' stamps the pickup time.
    """
    order = get_order(db, data.id)
    previous = order.status
    if data.status == "cancelled" and previous != "cancelled":
        _release_order(db, order)
    if data.status == "ready" and order.pickup_time is None:
        order.pickup_time = func.now()
    order.status = data.status
    _commit(db, "updating order status")
    db.refresh(order)
    logger.info("order %s status %s -> %s", order.id, previous, order.status)
    return order


def get_order_by_qr(db: Session, qr_code: str) -> models.Order:
    order = db.scalars(select(models.Order).where(models.Order.qr_code == qr_code)).first()
    if not order:
        raise NotFoundError("no order for this QR code")
    return order


def verify_pickup(db: Session, data: schemas.PickupInput) -> models.Order:
    order = get_order_by_qr(db, data.qr_code)
    if order.status != "ready":
        raise ValidationError(f"order {order.id} is {order.status}, not ready for pickup")
    return update_order_status(db, schemas.OrderStatusUpdate(id=order.id, status="completed"))


# -------------------- Reports --------------------

def _bounds(filters: schemas.ReportFilter):
    start = filters.start_date
    end = filters.end_date
    if start is not None and not isinstance(start, datetime):
        start = datetime.combine(start, datetime.min.time())
    end_exclusive = None
    if end is not None:
        if isinstance(end, datetime):
            end_exclusive = end + timedelta(microseconds=1)
        elif isinstance(end, date):
            end_exclusive = datetime.combine(end, datetime.min.time()) + timedelta(days=1)
    return start, end_exclusive


def generate_report(db: Session, filters: schemas.ReportFilter) -> Dict:
    start, end_exclusive = _bounds(filters)
    if start is not None and end_exclusive is not None and start >= end_exclusive:
        raise ValidationError("start_date must not be after end_date")

    stmt = select(models.Transaction)
    if start is not None:
        stmt = stmt.where(models.Transaction.created_at >= start)
    if end_exclusive is not None:
        stmt = stmt.where(models.Transaction.created_at < end_exclusive)
    if filters.student_id is not None:
        stmt = stmt.where(models.Transaction.student_id == filters.student_id)
    if filters.transaction_type is not None:
        stmt = stmt.where(models.Transaction.type == filters.transaction_type)
    stmt = stmt.order_by(models.Transaction.created_at.desc(), models.Transaction.id.desc())
    transactions = list(db.scalars(stmt))

    totals = {"topup": Decimal("0"), "purchase": Decimal("0"), "refund": Decimal("0")}
    for txn in transactions:
        totals[txn.type] += Decimal(txn.amount)
    net = totals["topup"] + totals["purchase"] + totals["refund"]

    return {
        "filters": filters,
        "transaction_count": len(transactions),
        "total_topup": round_amount(totals["topup"]),
        # reported as money spent
        "total_purchase": round_amount(-totals["purchase"]),
        "total_refund": round_amount(totals["refund"]),
        "net_amount": round_amount(net),
        "transactions": transactions,
    }
