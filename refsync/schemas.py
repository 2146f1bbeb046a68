"""Per-domain shape of the external catalog.

Each ``DataDomain`` maps to the GraphQL query that fetches it, the top-level
key its response carries, and the pydantic model every record must satisfy.
Responses are validated here once, at the source boundary; nothing past the
source client re-checks record shape.
"""

from typing import Any, Dict, List, NamedTuple, Optional, Type

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from .errors import FetchError
from .models import DataDomain, Record


class CatalogRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None


class TaskRecord(CatalogRecord):
    description: Optional[str] = None
    trader: Optional[Dict[str, Any]] = None
    objectives: Optional[List[Dict[str, Any]]] = None


class HideoutStationRecord(CatalogRecord):
    description: Optional[str] = None
    levels: Optional[List[Dict[str, Any]]] = None


class ItemRecord(CatalogRecord):
    description: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    types: Optional[List[str]] = None


TASKS_QUERY = """
query GetTasks {
  tasks {
    id
    name
    description
    trader { name }
    requirements {
      level
      tasks { id status }
      items { id count }
      traderLevel { name level }
    }
    objectives {
      id
      description
      type
      target { id name }
      location { id name }
      conditions { compareMethod conditionType value dynamicValues }
    }
  }
}
"""

HIDEOUT_QUERY = """
query GetHideoutModules {
  hideoutStations {
    id
    name
    description
    levels {
      level
      itemRequirements { id count }
      requirements { type value }
    }
  }
}
"""

ITEMS_QUERY = """
query GetItems {
  items {
    id
    name
    description
    width
    height
    categories { name }
    types
    properties { name value }
  }
}
"""


class DomainSchema(NamedTuple):
    domain: DataDomain
    response_key: str
    query: str
    record_model: Type[CatalogRecord]


DOMAIN_SCHEMAS: Dict[DataDomain, DomainSchema] = {
    DataDomain.TASKS: DomainSchema(DataDomain.TASKS, "tasks", TASKS_QUERY, TaskRecord),
    DataDomain.HIDEOUT: DomainSchema(
        DataDomain.HIDEOUT, "hideoutStations", HIDEOUT_QUERY, HideoutStationRecord
    ),
    DataDomain.ITEMS: DomainSchema(DataDomain.ITEMS, "items", ITEMS_QUERY, ItemRecord),
}

_ADAPTERS = {
    domain: TypeAdapter(List[schema.record_model])
    for domain, schema in DOMAIN_SCHEMAS.items()
}


def validate_response(domain: DataDomain, payload: Any) -> List[Record]:
    """Return the domain's record list from ``payload`` or raise ``FetchError``.

    The returned records are the original dicts, untouched, so extra fields
    the catalog adds later survive the round trip into the store.
    """
    schema = DOMAIN_SCHEMAS[domain]
    key = schema.response_key
    if not isinstance(payload, dict) or key not in payload:
        raise FetchError(domain.value, f"response is missing '{key}'", kind="malformed")

    raw = payload[key]
    if not isinstance(raw, list):
        raise FetchError(
            domain.value,
            f"'{key}' is {type(raw).__name__}, expected a list",
            kind="malformed",
        )

    try:
        _ADAPTERS[domain].validate_python(raw)
    except ValidationError as exc:
        raise FetchError(
            domain.value,
            f"'{key}' failed validation: {exc.error_count()} error(s)",
            kind="malformed",
        ) from exc

    seen = set()
    for record in raw:
        if record["id"] in seen:
            raise FetchError(
                domain.value, f"duplicate id '{record['id']}' in '{key}'", kind="malformed"
            )
        seen.add(record["id"])
    return list(raw)
