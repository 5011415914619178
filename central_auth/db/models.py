"""Row types returned by the datastore."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional


@dataclass(frozen=True)
class PersonaAssignment:
    """One persona assignment of a person to an application."""
    app_slug: str
    persona_code: str
    persona_name: str


@dataclass
class DatastoreClaims:
    """Authorization data held for a person, as stored."""
    person_id: str
    status: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    assignments: List[PersonaAssignment] = field(default_factory=list)


@dataclass
class Prospect:
    prospect_id: int
    email: str
    entry_route: Optional[str] = None
    person_uuid: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class RegistrationJourney:
    journey_id: int
    prospect_id: int
    current_step_id: Optional[int]
    status: Optional[str] = None
    metadata: Any = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
