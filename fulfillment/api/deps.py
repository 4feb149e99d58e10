"""Fulfillment — FastAPI dependencies."""
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from fulfillment.services.material_order_service import MaterialOrderService
from fulfillment.services.wiring import build_material_order_service


@lru_cache
def get_material_order_service() -> MaterialOrderService:
    return build_material_order_service()


OrderService = Annotated[MaterialOrderService, Depends(get_material_order_service)]
