from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Any

from gigmarket.domain.states import AccountType, NotificationType


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller, resolved once at the request boundary."""
    user_id: int
    account_type: AccountType
    via_session: bool = False


@dataclass(frozen=True)
class LocationFix:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    source: str = "gps"
    timestamp: Optional[datetime] = None


@dataclass
class ApplicationDetails:
    cover_letter: Optional[str] = None
    message: Optional[str] = None
    hourly_rate: Optional[Decimal] = None
    expected_duration: Optional[str] = None


@dataclass
class JobDetails:
    title: str
    description: str
    category: str
    payment_type: str
    payment_amount: Decimal
    location: str
    latitude: float
    longitude: float
    date_needed: datetime
    required_skills: list[str] = field(default_factory=list)
    equipment_provided: bool = False
    verify_location_to_start: bool = True
    service_fee: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None


@dataclass
class PendingNotification:
    """A notification a handler wants emitted; persisted by the dispatcher."""
    user_id: int
    title: str
    message: str
    type: NotificationType
    source_id: Optional[int] = None
    source_type: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
