"""Entity kinds: the tagged union over Place / Log / Trip."""
from enum import Enum
from typing import Dict, Type, Union

from sonder.models.records import Log, Place, Trip

Record = Union[Place, Log, Trip]


class EntityKind(str, Enum):
    PLACE = "place"
    LOG = "log"
    TRIP = "trip"

    @property
    def model(self) -> Type[Record]:
        return _MODELS[self]

    @property
    def table(self) -> str:
        """Remote table name."""
        return _TABLES[self]


_MODELS: Dict[EntityKind, Type[Record]] = {
    EntityKind.PLACE: Place,
    EntityKind.LOG: Log,
    EntityKind.TRIP: Trip,
}

_TABLES: Dict[EntityKind, str] = {
    EntityKind.PLACE: "places",
    EntityKind.LOG: "logs",
    EntityKind.TRIP: "trips",
}

_KINDS_BY_MODEL = {model: kind for kind, model in _MODELS.items()}

# Kinds pulled by cursor; places are fetched on demand for pulled logs
PULL_ORDER = (EntityKind.TRIP, EntityKind.LOG)


def kind_of(record: Record) -> EntityKind:
    try:
        return _KINDS_BY_MODEL[type(record)]
    except KeyError:
        raise TypeError(f"Not a syncable record: {type(record).__name__}") from None
