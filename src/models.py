from typing import List, Optional
from pydantic import BaseModel, field_validator

from config import FixedSubscription


class Subscription(BaseModel):
    id: str
    name: str
    url: str


class SubscriptionCreateRequest(BaseModel):
    url: str
    name: Optional[str] = None

    @field_validator('name')
    @classmethod
    def strip_name(cls, v):
        if v is not None:
            v = v.strip()
            return v or None
        return v


class Channel(BaseModel):
    name: str
    url: str
    logo: str = ""
    group: str = ""


class ProxiedChannel(Channel):
    # URL of the channel routed through the forwarding proxy (None for non-http URLs)
    proxy_url: Optional[str] = None


class ChannelListResponse(BaseModel):
    subscription: Subscription
    count: int
    channels: List[ProxiedChannel]


__all__ = [
    "Subscription",
    "SubscriptionCreateRequest",
    "FixedSubscription",
    "Channel",
    "ProxiedChannel",
    "ChannelListResponse",
]
