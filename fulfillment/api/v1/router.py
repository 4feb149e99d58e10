"""Fulfillment — API v1 router aggregation."""
from fastapi import APIRouter

from fulfillment.api.v1.endpoints import material_orders

api_router = APIRouter()

api_router.include_router(material_orders.router, prefix="/material-orders", tags=["material-orders"])
