"""
Services package initialization.
Business logic layer for coil production, sales and order fulfillment.
"""

from .errors import (
    TrackerError,
    NotFoundError,
    ValidationError,
    InsufficientStockError,
    ConflictError,
)
from .order_service import (
    decide_status,
    recompute_order,
    recompute_orders,
    recompute_all_orders,
)
from .coil_service import CoilService
from .production_service import CircleRunService, PattaRunService, PlRunService
from .sales_service import CircleSaleService, PlSaleService, ScrapSaleService
from .stock_service import LineageResolver, allocate_fifo

__all__ = [
    'TrackerError',
    'NotFoundError',
    'ValidationError',
    'InsufficientStockError',
    'ConflictError',
    'decide_status',
    'recompute_order',
    'recompute_orders',
    'recompute_all_orders',
    'CoilService',
    'CircleRunService',
    'PattaRunService',
    'PlRunService',
    'CircleSaleService',
    'PlSaleService',
    'ScrapSaleService',
    'LineageResolver',
    'allocate_fifo',
]
