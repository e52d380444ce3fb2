import enum

from pydantic import BaseModel


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    CONTRACTOR = "contractor"
    ADMIN = "admin"
    # External confirmations (payment collaborator, schedulers)
    SYSTEM = "system"


class Actor(BaseModel):
    """Opaque identity supplied by the session layer for every mutating call."""

    id: int
    role: Role

    model_config = {"frozen": True}

    @property
    def is_customer(self) -> bool:
        return self.role == Role.CUSTOMER

    @property
    def is_contractor(self) -> bool:
        return self.role == Role.CONTRACTOR


SYSTEM_ACTOR = Actor(id=0, role=Role.SYSTEM)
