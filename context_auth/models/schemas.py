"""
Response schemas of the context-data API
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageResponse(BaseModel):
    message: str


class ContextData(BaseModel):
    ip: str
    country: str
    city: str
    browser: str
    platform: str
    os: str
    device: str
    deviceType: str


class PrimaryContext(ContextData):
    firstAdded: str


class ContextItem(ContextData):
    """A trusted or blocked login context as shown in the account settings"""
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(alias="_id")
    time: str


class SecurityLogItem(BaseModel):
    id: int
    time: str
    message: str
    type: str
    level: str
    context: Optional[Dict[str, Any]] = None
