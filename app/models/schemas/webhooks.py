"""
Pydantic schemas for webhook configs, cron tests and automation triggers.

Field-level rules (URL scheme, header coercion, automation product link)
live in the service layer so API and internal callers share one validator.
"""
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field

class WebhookConfigCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    target_url: str
    method: Optional[str] = "POST"
    headers: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = True
    description: Optional[str] = None
    scope: Optional[str] = "automation"
    product_id: Optional[str] = None

class WebhookConfigUpdate(BaseModel):
    name: Optional[str] = None
    target_url: Optional[str] = None
    method: Optional[str] = None
    headers: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = None
    description: Optional[str] = None
    scope: Optional[str] = None
    product_id: Optional[str] = None

class CronTestCreate(BaseModel):
    name: str = Field("", max_length=200)
    target_url: str
    method: Optional[str] = "POST"
    headers: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = True

class CronTestUpdate(BaseModel):
    name: Optional[str] = None
    target_url: Optional[str] = None
    method: Optional[str] = None
    headers: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = None

class AutomationSwitchRequest(BaseModel):
    webhook_config_id: str = Field(min_length=1)

class ActivationRequest(BaseModel):
    store_id: Optional[str] = Field(None, description="Defaults to the store linked on the subscription")
