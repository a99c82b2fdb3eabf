"""
Cartflow Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class Order -> collection "order". Embedded snapshot models (CartItem,
OrderItem, ShippingAddress) are stored inside their parent document.

Request models (suffix Request/Create/Update/Filter) validate incoming payloads before they
reach the services.
"""
from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, EmailStr


# ------------ Enums ------------

class ProductSize(str, Enum):
    XS = "xs"
    S = "s"
    M = "m"
    G = "g"
    GG = "gg"
    XXL = "xxl"


class ProductColor(str, Enum):
    BLACK = "black"
    WHITE = "white"
    GRAY = "gray"
    NAVY = "navy"
    RED = "red"
    BLUE = "blue"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    PIX = "pix"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


# ------------ Users ------------

class User(BaseModel):
    email: EmailStr
    password_hash: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.ACTIVE


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str
    last_name: str
    phone: Optional[str] = None
    linked_guest_order_id: Optional[str] = Field(None, description="Guest order to attach to the new account")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[UserRole] = None
    status: Optional[UserStatus] = None


class UserFilter(BaseModel):
    role: Optional[UserRole] = None
    status: Optional[UserStatus] = None
    search: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)


# ------------ Products ------------

class ProductVariant(BaseModel):
    size: ProductSize
    color: ProductColor
    stock: int = Field(..., ge=0)
    price: float = Field(..., ge=0)
    sku: Optional[str] = None


class Product(BaseModel):
    name: str
    code: str
    base_price: float = Field(..., ge=0)
    description: Optional[str] = None
    images: List[str] = []
    variants: List[ProductVariant]
    status: ProductStatus = ProductStatus.ACTIVE
    category: Optional[str] = None
    tags: List[str] = []
    featured: bool = False


class VariantInput(BaseModel):
    size: ProductSize
    color: ProductColor
    stock: int = Field(..., ge=0)
    price: float = Field(..., ge=0)


class ProductCreate(BaseModel):
    name: str
    code: str
    base_price: float = Field(..., ge=0)
    description: Optional[str] = None
    images: List[str] = []
    variants: List[VariantInput]
    category: Optional[str] = None
    tags: List[str] = []
    featured: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    code: Optional[str] = None
    base_price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    images: Optional[List[str]] = None
    variants: Optional[List[VariantInput]] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    featured: Optional[bool] = None


class VariantUpdate(BaseModel):
    stock: Optional[int] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)


class StockAdjustment(BaseModel):
    quantity: int = Field(..., ge=1)


class ProductFilter(BaseModel):
    category: Optional[str] = None
    code: Optional[str] = None
    status: Optional[ProductStatus] = None
    tag: Optional[str] = None
    size: Optional[ProductSize] = None
    color: Optional[ProductColor] = None
    search: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)


# ------------ Cart ------------

class CartItem(BaseModel):
    product_id: str
    variant_sku: str
    quantity: int = Field(..., ge=1)
    price_at_add: float  # snapshot taken when the line is first added, never re-derived
    product_name: str
    product_image: Optional[str] = None
    variant_size: str
    variant_color: str

    @property
    def subtotal(self) -> float:
        return self.price_at_add * self.quantity


class Cart(BaseModel):
    """One cart per user. Line edits go through the methods below."""

    user_id: str
    items: List[CartItem] = []

    def find_line(self, product_id: str, variant_sku: str) -> Optional[int]:
        for index, item in enumerate(self.items):
            if item.product_id == product_id and item.variant_sku == variant_sku:
                return index
        return None

    def add_line(self, item: CartItem) -> CartItem:
        """Add a line, merging into an existing (product, SKU) line instead of duplicating it."""
        index = self.find_line(item.product_id, item.variant_sku)
        if index is None:
            self.items.append(item)
            return item
        existing = self.items[index]
        existing.quantity += item.quantity
        return existing

    def set_quantity(self, index: int, quantity: int) -> CartItem:
        if quantity < 1:
            raise ValueError("quantity must be at least 1")
        item = self.items[index]
        item.quantity = quantity
        return item

    def remove_line(self, index: int) -> CartItem:
        return self.items.pop(index)

    def clear(self) -> None:
        self.items = []

    def has_line(self, index: int) -> bool:
        return 0 <= index < len(self.items)

    @property
    def subtotal(self) -> float:
        return sum(i.subtotal for i in self.items)

    @property
    def total_quantity(self) -> int:
        return sum(i.quantity for i in self.items)


class AddToCartRequest(BaseModel):
    product_id: str
    variant_sku: str
    quantity: int = Field(..., ge=1)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=1)


# ------------ Addresses ------------

class Address(BaseModel):
    user_id: str
    full_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str
    phone: str
    is_default: bool = False


class AddressCreate(BaseModel):
    full_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str
    phone: str
    is_default: Optional[bool] = None


class AddressUpdate(BaseModel):
    full_name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    is_default: Optional[bool] = None


# ------------ Orders ------------

class OrderItem(BaseModel):
    product_id: str
    variant_sku: str
    product_name: str
    product_image: Optional[str] = None
    variant_size: str
    variant_color: str
    quantity: int = Field(..., ge=1)
    price: float
    subtotal: float


class ShippingAddress(BaseModel):
    full_name: str
    email: EmailStr
    street: str
    city: str
    state: str
    zip_code: str
    country: str
    phone: str


class Order(BaseModel):
    order_number: str
    user_id: Optional[str] = None  # None marks a guest order
    items: List[OrderItem]
    shipping_address: ShippingAddress
    subtotal: float
    shipping_cost: float = 0.0
    total: float
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    notes: Optional[str] = None


class CreateOrderRequest(BaseModel):
    address_id: str
    payment_method: PaymentMethod
    shipping_cost: float = Field(0.0, ge=0)
    notes: Optional[str] = None


class GuestCartItem(BaseModel):
    product_id: str
    variant_sku: str
    quantity: int = Field(..., ge=1)


class GuestShippingAddress(BaseModel):
    full_name: str
    email: Optional[EmailStr] = None
    street: str
    city: str
    state: str
    zip_code: str
    country: str
    phone: str


class CreateGuestOrderRequest(BaseModel):
    email: EmailStr
    cart: List[GuestCartItem]
    shipping_address: GuestShippingAddress
    payment_method: PaymentMethod
    shipping_cost: float = Field(0.0, ge=0)
    notes: Optional[str] = None


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    payment_status: Optional[PaymentStatus] = None


class OrderFilter(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    is_guest: Optional[bool] = None
    search: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
