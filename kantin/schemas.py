from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, PlainSerializer, PositiveInt, field_validator
from pydantic.config import ConfigDict

UserRole = Literal["student", "parent", "canteen_manager", "admin"]
OrderStatus = Literal["pending", "confirmed", "preparing", "ready", "completed", "cancelled"]
TransactionType = Literal["topup", "purchase", "refund"]
Category = Literal["main_course", "snack", "beverage", "dessert"]

# Numeric(10, 2) columns come back as Decimal; clients get plain numbers
Money = Annotated[Decimal, PlainSerializer(float, return_type=float)]


# -------------------- Users --------------------

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: UserRole
    full_name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=20)


class UserRead(BaseModel):
    id: int
    username: str
    email: str
    role: UserRole
    full_name: str
    phone: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LoginInput(BaseModel):
    username: str
    password: str


class AuthResponse(BaseModel):
    user: UserRead
    token: str


# -------------------- Students --------------------

class StudentCreate(BaseModel):
    user_id: PositiveInt
    student_id: str = Field(..., min_length=1, max_length=50)
    class_name: str = Field(..., min_length=1, max_length=50)
    balance: Decimal = Field(default=Decimal("0"), ge=0)
    spending_limit: Optional[Decimal] = Field(default=None, gt=0)


class StudentRead(BaseModel):
    id: int
    user_id: int
    student_id: str
    class_name: str
    balance: Money
    spending_limit: Optional[Money] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ParentStudentCreate(BaseModel):
    parent_id: PositiveInt
    student_id: PositiveInt


class ParentStudentRead(BaseModel):
    id: int
    parent_id: int
    student_id: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# -------------------- Menu --------------------

class MenuItemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    price: Decimal = Field(..., gt=0)
    category: Category
    image_url: Optional[str] = Field(default=None, max_length=500)
    is_available: bool = True
    stock_quantity: int = Field(..., ge=0)


class MenuItemChanges(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, gt=0)
    category: Optional[Category] = None
    image_url: Optional[str] = Field(default=None, max_length=500)
    is_available: Optional[bool] = None
    stock_quantity: Optional[int] = Field(default=None, ge=0)


class MenuItemUpdate(MenuItemChanges):
    id: PositiveInt


class MenuItemRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: Money
    category: Category
    image_url: Optional[str] = None
    is_available: bool
    stock_quantity: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# -------------------- Orders --------------------

class OrderLineInput(BaseModel):
    menu_item_id: PositiveInt
    quantity: PositiveInt


class OrderCreate(BaseModel):
    student_id: PositiveInt
    items: List[OrderLineInput]

    @field_validator("items")
    def not_empty(cls, v: List[OrderLineInput]):
        if not v:
            raise ValueError("order must contain at least one item")
        return v


class OrderStatusBody(BaseModel):
    status: OrderStatus


class OrderStatusUpdate(OrderStatusBody):
    id: PositiveInt


class PickupInput(BaseModel):
    qr_code: str = Field(..., min_length=1)


class OrderItemRead(BaseModel):
    id: int
    order_id: int
    menu_item_id: int
    quantity: int
    unit_price: Money
    total_price: Money
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderRead(BaseModel):
    id: int
    student_id: int
    total_amount: Money
    status: OrderStatus
    qr_code: Optional[str] = None
    pickup_time: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderDetail(OrderRead):
    items: List[OrderItemRead] = []


# -------------------- Balance --------------------

class TransactionCreate(BaseModel):
    student_id: PositiveInt
    order_id: Optional[PositiveInt] = None
    type: TransactionType
    amount: Decimal
    description: Optional[str] = None


class TransactionRead(BaseModel):
    id: int
    student_id: int
    order_id: Optional[int] = None
    type: TransactionType
    amount: Money
    description: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TopupInput(BaseModel):
    student_id: PositiveInt
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None


class SpendingLimitUpdate(BaseModel):
    student_id: PositiveInt
    # null removes the limit
    spending_limit: Optional[Decimal] = Field(..., gt=0)


class SpendingLimitBody(BaseModel):
    spending_limit: Optional[Decimal] = Field(..., gt=0)


# -------------------- Reports --------------------

class ReportFilter(BaseModel):
    # a bare date covers the whole day
    start_date: Optional[Union[date, datetime]] = None
    end_date: Optional[Union[date, datetime]] = None
    student_id: Optional[PositiveInt] = None
    transaction_type: Optional[TransactionType] = None


class ReportRead(BaseModel):
    filters: ReportFilter
    transaction_count: int
    total_topup: Money
    total_purchase: Money
    total_refund: Money
    net_amount: Money
    transactions: List[TransactionRead] = []
