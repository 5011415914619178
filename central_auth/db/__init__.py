"""
Datastore package.

PostgreSQL access for person records, persona assignments and the
prospect / registration-journey tables used to track sign-ups.
"""

from .client import Database, DatastoreError
from .datastore import Datastore, PostgresDatastore
from .models import DatastoreClaims, PersonaAssignment, Prospect, RegistrationJourney

__all__ = [
    "Database",
    "DatastoreError",
    "Datastore",
    "PostgresDatastore",
    "DatastoreClaims",
    "PersonaAssignment",
    "Prospect",
    "RegistrationJourney",
]
