from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_START_TIMEOUT = 600
DEFAULT_CREATE_TIMEOUT = 600
DEFAULT_STOP_TIMEOUT = 600


class SSHOptions(BaseModel):
    """Remote shell options; anything beyond port/user is handed to the transport."""
    model_config = ConfigDict(extra="allow")

    port: Optional[int] = Field(None, ge=1, le=65535)
    user: Optional[str] = None
    password: Optional[str] = None
    key_filename: Optional[str] = None
    timeout: float = Field(10.0, gt=0)


class BootstrapOptions(BaseModel):
    """Creation parameters passed through to the clone call."""
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    key_name: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    datacenter: Optional[str] = None
    template_folder: Optional[str] = None
    template_name: Optional[str] = None
    vm_folder: Optional[str] = None
    resource_pool: Optional[str] = None
    cluster: Optional[str] = None
    datastore: Optional[str] = None
    customization_spec: Optional[str] = None
    annotation: Optional[str] = None
    ssh: Optional[SSHOptions] = None
    winrm: Optional[Dict[str, Any]] = None

    def placement(self) -> Dict[str, Any]:
        """Options the platform clone call consumes opaquely."""
        return self.model_dump(
            exclude={"name", "key_name", "ssh", "winrm", "template_folder", "template_name"},
            exclude_none=True,
        )


class MachineOptions(BaseModel):
    """Per-call options; never persisted."""
    model_config = ConfigDict(extra="allow")

    bootstrap_options: BootstrapOptions = Field(default_factory=BootstrapOptions)
    start_timeout: float = DEFAULT_START_TIMEOUT
    create_timeout: float = DEFAULT_CREATE_TIMEOUT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    convergence_options: Dict[str, Any] = Field(default_factory=dict)
    ssh_username: Optional[str] = None
    sudo: Optional[bool] = None
    use_private_ip_for_ssh: Optional[bool] = None
    ssh_gateway: Optional[str] = None
    name_conflict: Literal["reuse", "error"] = "reuse"


class MachineLocation(BaseModel):
    """Platform linkage of a created machine. server_id is the only lookup key."""
    model_config = ConfigDict(extra="allow")

    driver_url: str
    driver_version: str
    server_id: str
    is_windows: bool = False
    allocated_at: datetime
    started_at: Optional[datetime] = None
    key_name: Optional[str] = None
    ssh_username: Optional[str] = None
    sudo: Optional[bool] = None
    use_private_ip_for_ssh: Optional[bool] = None
    ssh_gateway: Optional[str] = None


class MachineSpec(BaseModel):
    """Identity and persisted state of one logical machine."""

    name: str = Field(..., min_length=1)
    id: Optional[str] = None
    location: Optional[MachineLocation] = None
