from enum import Enum


class ControllerPhase(str, Enum):
    STARTING = "starting"
    STEADY = "steady"
    DEGRADED = "degraded"
    CLOSED = "closed"
