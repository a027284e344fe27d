from typing import Any, Dict, List, Optional
from datetime import date, datetime
from pydantic import BaseModel, Field, root_validator, validator


# Accepted spellings per canonical order field. The canonical key wins.
ORDER_ALIASES = {
    "order_date": ("orderDate",),
    "order_by": ("orderBy",),
    "thickness_mm": ("thicknessMm", "thickness"),
    "op_size_mm": ("opSizeMm", "opSize", "op_size"),
    "ordered_qty_pcs": ("orderedQty", "orderedQuantity", "quantity", "qty", "ordered_qty"),
    "ordered_weight_kg": ("orderedWeightKg", "orderedWeight", "ordered_weight"),
    "price_per_kg": ("pricePerKg",),
}
ORDER_BLANK_AS_NULL = (
    "order_date", "thickness_mm", "op_size_mm",
    "ordered_qty_pcs", "ordered_weight_kg", "price_per_kg",
)

# Sales link to orders.id; older clients send it as order_no.
SALE_ALIASES = {
    "order_id": ("order_no", "orderNo", "orderId"),
}
SALE_BLANK_AS_NULL = ("order_id",)


def _apply_aliases(values: Any, aliases: Dict[str, tuple], blank_as_null: tuple) -> Any:
    if not isinstance(values, dict):
        return values
    data = dict(values)
    for canonical, spellings in aliases.items():
        for alias in spellings:
            if alias not in data:
                continue
            value = data.pop(alias)
            if canonical not in data:
                data[canonical] = value
    for key in blank_as_null:
        if isinstance(data.get(key), str) and not data[key].strip():
            data[key] = None
    return data


def normalize_order_payload(values: Any) -> Any:
    """Map alias keys onto canonical order fields; blank numbers become None."""
    return _apply_aliases(values, ORDER_ALIASES, ORDER_BLANK_AS_NULL)


def normalize_sale_payload(values: Any) -> Any:
    return _apply_aliases(values, SALE_ALIASES, SALE_BLANK_AS_NULL)


class SalePayload(BaseModel):
    """Base for sale requests that may link to an order."""

    @root_validator(pre=True)
    def normalize_order_link(cls, values):
        return normalize_sale_payload(values)


class OrderCreate(BaseModel):
    order_date: Optional[date] = None
    order_by: Optional[str] = None
    company: Optional[str] = None
    grade: Optional[str] = None
    thickness_mm: Optional[float] = None
    op_size_mm: Optional[float] = None
    ordered_qty_pcs: Optional[int] = Field(None, ge=0)
    ordered_weight_kg: Optional[float] = Field(None, ge=0)
    price_per_kg: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None

    @root_validator(pre=True)
    def normalize_aliases(cls, values):
        return normalize_order_payload(values)


class OrderUpdate(OrderCreate):
    """Partial edit; status and fulfilment are derived and never accepted."""


class OrderCancel(BaseModel):
    remarks: Optional[str] = None


class OrderOut(BaseModel):
    id: int
    order_date: Optional[date]
    order_by: Optional[str]
    company: Optional[str]
    grade: Optional[str]
    thickness_mm: Optional[float]
    op_size_mm: Optional[float]
    ordered_qty_pcs: Optional[int]
    ordered_weight_kg: Optional[float]
    fulfilled_qty_pcs: int
    fulfilled_weight_kg: float
    remaining_weight_kg: float
    price_per_kg: Optional[float]
    notes: Optional[str]
    status: str
    cancelled_at: Optional[datetime]
    cancel_remarks: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


# =============================================================================
# COILS
# =============================================================================

class CoilPurchase(BaseModel):
    rn: Optional[str] = None
    grade: Optional[str] = None
    thickness: Optional[float] = None
    width: Optional[float] = None
    supplier: Optional[str] = None
    purchase_weight_kg: Optional[float] = None
    purchase_date: Optional[date] = None
    purchase_price: Optional[float] = None

    @root_validator(pre=True)
    def accept_camel_price(cls, values):
        if isinstance(values, dict) and "purchasePrice" in values:
            values = dict(values)
            price = values.pop("purchasePrice")
            values.setdefault("purchase_price", price)
        if isinstance(values, dict) and values.get("purchase_price") == "":
            values = dict(values, purchase_price=None)
        return values


class CoilUpdate(CoilPurchase):
    pass


class CoilOut(BaseModel):
    id: int
    rn: Optional[str]
    grade: Optional[str]
    thickness: Optional[float]
    width: Optional[float]
    supplier: Optional[str]
    purchase_weight_kg: float
    purchase_date: Optional[date]
    purchase_price: Optional[float]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class CoilStockOut(BaseModel):
    id: int
    coil_id: int
    rn: Optional[str]
    grade: Optional[str]
    thickness: Optional[float]
    width: Optional[float]
    supplier: Optional[str]
    purchase_date: Optional[date]
    initial_weight_kg: float
    available_weight_kg: float
    purchase_price: Optional[float]

    class Config:
        from_attributes = True


class BulkDeleteRequest(BaseModel):
    ids: List[int] = []


class DirectSaleCreate(SalePayload):
    sold_weight_kg: Optional[float] = None
    buyer: Optional[str] = None
    price_per_kg: Optional[float] = Field(None, ge=0)
    sale_date: Optional[date] = None
    order_id: Optional[int] = None


class DirectSaleOut(BaseModel):
    id: int
    coil_id: int
    order_id: Optional[int]
    sold_weight_kg: float
    buyer: Optional[str]
    price_per_kg: Optional[float]
    sale_date: Optional[date]

    class Config:
        from_attributes = True


class CoilScrapCreate(BaseModel):
    scrap_weight_kg: float = Field(..., gt=0)


class CoilScrapOut(BaseModel):
    id: int
    coil_id: int
    scrap_weight_kg: float
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


# =============================================================================
# RUNS
# =============================================================================

class CircleRunCreate(BaseModel):
    coil_id: Optional[int] = None
    run_date: Optional[date] = None
    operator: Optional[str] = None
    net_weight_kg: Optional[float] = Field(None, ge=0)
    op_size_mm: Optional[float] = Field(None, ge=0)
    circle_weight_kg: Optional[float] = Field(None, ge=0)
    qty: Optional[int] = Field(None, ge=0)
    scrap_weight_kg: Optional[float] = Field(None, ge=0)
    patta_size: Optional[float] = Field(None, ge=0)
    patta_weight_kg: Optional[float] = Field(None, ge=0)
    pl_size: Optional[float] = Field(None, ge=0)
    pl_weight_kg: Optional[float] = Field(None, ge=0)


class CircleRunUpdate(CircleRunCreate):
    pass


class BulkStartRequest(BaseModel):
    coil_ids: List[int] = []
    operator: Optional[str] = None
    run_date: Optional[date] = None


class CircleRunOut(BaseModel):
    id: int
    coil_id: int
    run_date: Optional[date]
    operator: Optional[str]
    grade: Optional[str]
    thickness: Optional[float]
    width: Optional[float]
    net_weight_kg: Optional[float]
    op_size_mm: Optional[float]
    circle_weight_kg: Optional[float]
    qty: Optional[int]
    scrap_weight_kg: Optional[float]
    patta_size: Optional[float]
    patta_weight_kg: Optional[float]
    pl_size: Optional[float]
    pl_weight_kg: Optional[float]

    class Config:
        from_attributes = True


class PattaRunCreate(BaseModel):
    source_type: Optional[str] = None
    patta_source_id: Optional[int] = None
    run_date: Optional[date] = None
    operator: Optional[str] = None
    net_weight_kg: Optional[float] = Field(None, ge=0)
    op_size_mm: Optional[float] = Field(None, ge=0)
    circle_weight_kg: Optional[float] = Field(None, ge=0)
    qty: Optional[int] = Field(None, ge=0)
    scrap_weight_kg: Optional[float] = Field(None, ge=0)
    patta_size: Optional[float] = Field(None, ge=0)
    grade: Optional[str] = None


class PattaRunUpdate(PattaRunCreate):
    pass


class PattaRunOut(BaseModel):
    id: int
    source_type: str
    patta_source_id: int
    run_date: Optional[date]
    operator: Optional[str]
    net_weight_kg: Optional[float]
    op_size_mm: Optional[float]
    circle_weight_kg: Optional[float]
    qty: Optional[int]
    scrap_weight_kg: Optional[float]
    patta_size: Optional[float]
    grade: Optional[str]

    class Config:
        from_attributes = True


class PlRunCreate(BaseModel):
    source_type: Optional[str] = None
    pl_source_id: Optional[int] = None
    run_date: Optional[date] = None
    operator: Optional[str] = None
    net_weight_kg: Optional[float] = Field(None, ge=0)
    op_size_mm: Optional[float] = Field(None, ge=0)
    circle_weight_kg: Optional[float] = Field(None, ge=0)
    qty: Optional[int] = Field(None, ge=0)
    scrap_weight_kg: Optional[float] = Field(None, ge=0)


class PlRunUpdate(PlRunCreate):
    pass


class PlRunOut(BaseModel):
    id: int
    source_type: str
    pl_source_id: int
    run_date: Optional[date]
    operator: Optional[str]
    net_weight_kg: Optional[float]
    op_size_mm: Optional[float]
    circle_weight_kg: Optional[float]
    qty: Optional[int]
    scrap_weight_kg: Optional[float]

    class Config:
        from_attributes = True


# =============================================================================
# SALES
# =============================================================================

class CircleSaleCreate(SalePayload):
    stock_id: Optional[int] = None
    sold_qty: Optional[int] = Field(None, ge=0)
    sold_weight_kg: Optional[float] = None
    buyer: Optional[str] = None
    price_per_kg: Optional[float] = Field(None, ge=0)
    sale_date: Optional[date] = None
    order_id: Optional[int] = None


class CircleSaleOut(BaseModel):
    id: int
    stock_id: int
    order_id: Optional[int]
    sold_qty: int
    sold_weight_kg: float
    buyer: Optional[str]
    price_per_kg: Optional[float]
    sale_date: Optional[date]

    class Config:
        from_attributes = True


class RecordOrderRequest(SalePayload):
    stock_id: Optional[int] = None
    order_id: Optional[int] = None


class RecordOrderOut(BaseModel):
    ok: bool
    sale: CircleSaleOut
    order: OrderOut


class PlSaleCreate(SalePayload):
    pl_stock_id: Optional[int] = None
    sold_qty: Optional[int] = Field(None, ge=0)
    sold_weight_kg: Optional[float] = None
    buyer: Optional[str] = None
    price_per_kg: Optional[float] = Field(None, ge=0)
    sale_date: Optional[date] = None
    order_id: Optional[int] = None


class PlSaleOut(BaseModel):
    id: int
    pl_stock_id: int
    order_id: Optional[int]
    sold_qty: int
    sold_weight_kg: float
    buyer: Optional[str]
    price_per_kg: Optional[float]
    sale_date: Optional[date]

    class Config:
        from_attributes = True


class BulkSaleRequest(SalePayload):
    """FIFO sale of a weight of one grade across matching stock"""
    grade: str = Field(..., min_length=1)
    weight_kg: float = Field(..., gt=0)
    size_mm: Optional[float] = None
    thickness_mm: Optional[float] = None
    source_type: Optional[str] = None
    buyer: Optional[str] = None
    price_per_kg: Optional[float] = Field(None, ge=0)
    sale_date: Optional[date] = None
    order_id: Optional[int] = None
    notes: Optional[str] = None

    @validator('weight_kg')
    def round_precision(cls, v):
        return round(v, 3)


class ScrapSaleCreate(SalePayload):
    rn: Optional[str] = None
    source_type: Optional[str] = None
    grade: Optional[str] = None
    weight_kg: Optional[float] = None
    buyer: Optional[str] = None
    price_per_kg: Optional[float] = Field(None, ge=0)
    sale_date: Optional[date] = None
    order_id: Optional[int] = None
    notes: Optional[str] = None


class ScrapSaleUpdate(ScrapSaleCreate):
    pass


class ScrapSaleOut(BaseModel):
    id: int
    rn: Optional[str]
    source_type: Optional[str]
    grade: Optional[str]
    order_id: Optional[int]
    weight_kg: float
    buyer: Optional[str]
    price_per_kg: Optional[float]
    sale_date: Optional[date]
    notes: Optional[str]

    class Config:
        from_attributes = True


# =============================================================================
# COMPANIES
# =============================================================================

class CompanyCreate(BaseModel):
    name: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class CompanyOut(BaseModel):
    id: int
    name: str
    country: Optional[str]
    city: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class StatusOut(BaseModel):
    ok: bool
    status: str
    totals: Dict[str, float]
