from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, field_validator


NODE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
# repository[:tag][@digest], optionally prefixed by a registry host.
IMAGE_RE = re.compile(
    r"^(?:[a-zA-Z0-9.\-]+(?::[0-9]+)?/)?[a-z0-9]+(?:[._\-/][a-z0-9]+)*(?::[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127})?(?:@sha256:[a-f0-9]{64})?$"
)
HOST_ADDRESS_RE = re.compile(r"^(unix|tcp|ssh|npipe)://\S+$")


class CreateNodeRequest(BaseModel):
    name: str = Field(..., description="Display name (dns-safe, unique among live nodes)")
    image: str = Field(..., description="Docker image (name:tag)")
    staking_port: int = Field(9651, ge=1, le=65535, description="Staking/P2P port published on the host")
    http_port: int = Field(9650, ge=1, le=65535, description="HTTP API port published on the host")
    host_id: int | None = Field(None, description="Target host; defaults to the first registered host")
    node_id: str | None = Field(None, description="Workload-issued NodeID, if already known")

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        if not NODE_NAME_RE.match(v):
            raise ValueError(
                "Invalid node name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
            )
        return v

    @field_validator("image")
    @classmethod
    def _image(cls, v: str) -> str:
        if not IMAGE_RE.match(v):
            raise ValueError("Invalid image reference. Expected repository[:tag].")
        return v


class CreateHostRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=63)
    address: str = Field(..., description="Docker endpoint, e.g. unix:///var/run/docker.sock or tcp://10.0.0.5:2375")
    capacity: int = Field(0, ge=0, description="Maximum live nodes on this host (0 = unlimited)")

    @field_validator("address")
    @classmethod
    def _address(cls, v: str) -> str:
        if not HOST_ADDRESS_RE.match(v):
            raise ValueError("Invalid host address. Use unix://, tcp://, ssh:// or npipe://.")
        return v


class BindL1Request(BaseModel):
    subnet_id: str = Field(..., min_length=1, max_length=128, description="Logical network/subnet identifier")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Join metadata")


class NodeIdentityRequest(BaseModel):
    node_id: str = Field(..., min_length=1, max_length=128)
