"""Aggregates every router mounted by create_app()."""

from __future__ import annotations

from fastapi import APIRouter

from imobibase.api import compliance, compliance_admin, health, webhooks

# Public router (no auth required)
public_router = APIRouter()
public_router.include_router(health.router)
public_router.include_router(webhooks.router)

api_router = APIRouter()
api_router.include_router(compliance.router)
api_router.include_router(compliance_admin.router)
