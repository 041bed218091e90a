from enum import Enum
from typing import Dict

from pydantic import BaseModel, Field


class PowerState(str, Enum):
    HALTED = "Halted"
    PAUSED = "Paused"
    RUNNING = "Running"
    SUSPENDED = "Suspended"


class VMDescriptor(BaseModel):
    uuid: str
    name: str
    power_state: PowerState
    memory: int = Field(..., description="Static memory ceiling in bytes")


class VMMetrics(BaseModel):
    uuid: str
    cpu_usage: Dict[str, float] = Field(
        default_factory=dict,
        description="Utilisation fraction per vCPU index",
    )
    memory_usage: int = Field(..., description="Actual memory in use, bytes")


class VMCreateSchema(BaseModel):
    """
    Schema for creating a new VM from a XenServer template.

    'template' is the template's name label; it must match exactly one
    template on the pool.
    """

    name: str = Field(..., min_length=1, description="Name label of the new VM")
    template: str = Field(..., min_length=1, description="Template name label to clone")
    memory: int = Field(..., gt=0, description="Memory in bytes (static and dynamic bounds)")
    vcpus: int = Field(..., gt=0, description="Number of virtual CPUs")
    start: bool = Field(False, description="Start the VM once it is configured")


class VMCreated(BaseModel):
    ref: str
    uuid: str
    name: str


class VMActionResult(BaseModel):
    uuid: str
    action: str
    changed: bool
    message: str
