from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, Text, Float, UniqueConstraint
from sqlalchemy.orm import relationship
from .db import Base


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PARTIAL = "Partial"
    FULFILLED = "Fulfilled"
    CANCELLED = "Cancelled"


class SourceType(str, Enum):
    """Where a run or stock row came from"""
    CIRCLE = "circle"
    PATTA = "patta"
    PL = "pl"


class Company(Base):
    __tablename__ = "companies"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    country = Column(String, nullable=True)
    city = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Coil(Base):
    __tablename__ = "coils"
    id = Column(Integer, primary_key=True, index=True)
    rn = Column(String, unique=True, index=True, nullable=True)  # workshop S.No.
    grade = Column(String, nullable=True)
    thickness = Column(Float, nullable=True)
    width = Column(Float, nullable=True)
    supplier = Column(String, nullable=True)
    purchase_weight_kg = Column(Float, nullable=False)
    purchase_date = Column(Date, nullable=True)
    purchase_price = Column(Float, nullable=True)  # per kg
    created_at = Column(DateTime, default=datetime.utcnow)
    circle_runs = relationship("CircleRun", back_populates="coil")
    stock = relationship("CoilStock", back_populates="coil", uselist=False)


class CoilStock(Base):
    """Mirror of a coil with its cached balance"""
    __tablename__ = "coil_stock"
    id = Column(Integer, primary_key=True, index=True)
    coil_id = Column(Integer, ForeignKey("coils.id"), unique=True, nullable=False)
    rn = Column(String, nullable=True)
    grade = Column(String, nullable=True)
    thickness = Column(Float, nullable=True)
    width = Column(Float, nullable=True)
    supplier = Column(String, nullable=True)
    purchase_date = Column(Date, nullable=True)
    initial_weight_kg = Column(Float, nullable=False)
    available_weight_kg = Column(Float, nullable=False)
    purchase_price = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
    coil = relationship("Coil", back_populates="stock")


class CoilDirectSale(Base):
    __tablename__ = "coil_direct_sales"
    id = Column(Integer, primary_key=True, index=True)
    coil_id = Column(Integer, ForeignKey("coils.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    sold_weight_kg = Column(Float, nullable=False)
    buyer = Column(String, nullable=True)
    price_per_kg = Column(Float, nullable=True)
    sale_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class CoilScrap(Base):
    """Extra scrap booked directly against a coil"""
    __tablename__ = "coil_scrap"
    id = Column(Integer, primary_key=True, index=True)
    coil_id = Column(Integer, ForeignKey("coils.id"), nullable=False, index=True)
    scrap_weight_kg = Column(Float, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class CircleRun(Base):
    __tablename__ = "circle_runs"
    id = Column(Integer, primary_key=True, index=True)
    coil_id = Column(Integer, ForeignKey("coils.id"), nullable=False, index=True)
    run_date = Column(Date, nullable=True)
    operator = Column(String, nullable=True)
    # copied from the coil, kept in sync when the coil is edited
    grade = Column(String, nullable=True)
    thickness = Column(Float, nullable=True)
    width = Column(Float, nullable=True)
    net_weight_kg = Column(Float, nullable=True)  # coil input
    op_size_mm = Column(Float, nullable=True)
    circle_weight_kg = Column(Float, nullable=True)
    qty = Column(Integer, nullable=True)
    scrap_weight_kg = Column(Float, nullable=True)
    patta_size = Column(Float, nullable=True)
    patta_weight_kg = Column(Float, nullable=True)
    pl_size = Column(Float, nullable=True)
    pl_weight_kg = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    coil = relationship("Coil", back_populates="circle_runs")


class PattaRun(Base):
    __tablename__ = "patta_runs"
    id = Column(Integer, primary_key=True, index=True)
    source_type = Column(String, nullable=False)  # circle | patta
    patta_source_id = Column(Integer, nullable=False, index=True)
    run_date = Column(Date, nullable=True)
    operator = Column(String, nullable=True)
    net_weight_kg = Column(Float, nullable=True)
    op_size_mm = Column(Float, nullable=True)
    circle_weight_kg = Column(Float, nullable=True)
    qty = Column(Integer, nullable=True, default=0)
    scrap_weight_kg = Column(Float, nullable=True)
    patta_size = Column(Float, nullable=True)
    grade = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class PlRun(Base):
    __tablename__ = "pl_runs"
    id = Column(Integer, primary_key=True, index=True)
    source_type = Column(String, nullable=False)  # circle | pl
    pl_source_id = Column(Integer, nullable=False, index=True)
    run_date = Column(Date, nullable=True)
    operator = Column(String, nullable=True)
    net_weight_kg = Column(Float, nullable=True)
    op_size_mm = Column(Float, nullable=True)
    circle_weight_kg = Column(Float, nullable=True)
    qty = Column(Integer, nullable=True)
    scrap_weight_kg = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class CircleStock(Base):
    __tablename__ = "circle_stock"
    id = Column(Integer, primary_key=True, index=True)
    source_type = Column(String, nullable=False)  # circle | patta | pl
    source_id = Column(Integer, nullable=False)
    size_mm = Column(Float, nullable=True)
    weight_kg = Column(Float, nullable=True)
    qty = Column(Integer, nullable=True)
    production_date = Column(Date, nullable=True)
    operator = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
    sales = relationship("CircleSale", back_populates="stock")

    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_circle_stock_source"),
    )


class PlStock(Base):
    __tablename__ = "pl_stock"
    id = Column(Integer, primary_key=True, index=True)
    source_type = Column(String, nullable=False)
    source_id = Column(Integer, nullable=False)
    grade = Column(String, nullable=True)
    size_mm = Column(Float, nullable=True)
    weight_kg = Column(Float, nullable=False, default=0.0)
    qty = Column(Integer, nullable=True)
    production_date = Column(Date, nullable=True)
    operator = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
    sales = relationship("PlSale", back_populates="stock")

    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_pl_stock_source"),
    )


class CircleSale(Base):
    __tablename__ = "circle_sales"
    id = Column(Integer, primary_key=True, index=True)
    stock_id = Column(Integer, ForeignKey("circle_stock.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    sold_qty = Column(Integer, nullable=False, default=0)
    sold_weight_kg = Column(Float, nullable=False)
    buyer = Column(String, nullable=True)
    price_per_kg = Column(Float, nullable=True)
    sale_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    stock = relationship("CircleStock", back_populates="sales")


class PlSale(Base):
    __tablename__ = "pl_sales"
    id = Column(Integer, primary_key=True, index=True)
    pl_stock_id = Column(Integer, ForeignKey("pl_stock.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    sold_qty = Column(Integer, nullable=False, default=0)
    sold_weight_kg = Column(Float, nullable=False)
    buyer = Column(String, nullable=True)
    price_per_kg = Column(Float, nullable=True)
    sale_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    stock = relationship("PlStock", back_populates="sales")


class ScrapSale(Base):
    __tablename__ = "scrap_sales"
    id = Column(Integer, primary_key=True, index=True)
    rn = Column(String, nullable=True, index=True)  # scrap pool key, with source_type
    source_type = Column(String, nullable=True)
    grade = Column(String, nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    weight_kg = Column(Float, nullable=False)
    buyer = Column(String, nullable=True)
    price_per_kg = Column(Float, nullable=True)
    sale_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)  # the order no
    order_date = Column(Date, nullable=True)
    order_by = Column(String, nullable=True)
    company = Column(String, nullable=True)
    grade = Column(String, nullable=True)
    thickness_mm = Column(Float, nullable=True)
    op_size_mm = Column(Float, nullable=True)
    ordered_qty_pcs = Column(Integer, nullable=True)
    ordered_weight_kg = Column(Float, nullable=True)
    # derived from linked sales, see services.order_service.recompute_order
    fulfilled_qty_pcs = Column(Integer, nullable=False, default=0)
    fulfilled_weight_kg = Column(Float, nullable=False, default=0.0)
    price_per_kg = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_remarks = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def remaining_weight_kg(self) -> float:
        return max(0.0, (self.ordered_weight_kg or 0) - (self.fulfilled_weight_kg or 0))


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"
    version = Column(Integer, primary_key=True)
    description = Column(String, nullable=False)
    applied_at = Column(DateTime, default=datetime.utcnow)
