"""
Runtime configuration, delivered once by the host application.

The host sends a single CONFIG message whose payload is a flat dict:

    {
        "mock": false,
        "debounce_delay": 0.5,          # seconds; null disables partial refresh
        "full_refresh_interval": 3600,  # seconds; null disables the timer
        "prefer_few_level": false,
        "panel_variant": "standard",    # or "six_inch"
        "width": 1872, "height": 1404,  # mock geometry only
        "granularity": 32,
        "frames_dir": "/tmp/inkmirror", # mock frame dump
        "driver": {"vcom_mv": 1800}     # SpiConfig overrides
    }
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, ValidationError, model_validator

from inkmirror.classify import PanelVariant
from inkmirror.errors import ContractViolation
from inkmirror.regions import GRANULARITY

DEFAULT_WIDTH = 1872
DEFAULT_HEIGHT = 1404


class RefreshConfig(BaseModel):
    """Every tunable of the mirror. Immutable once delivered."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    mock: StrictBool = Field(default=False, description="Use the simulator panel")
    debounce_delay: Optional[float] = Field(
        default=0.5, ge=0, strict=True,
        description="Seconds to collect a damage burst; null disables partial refresh",
    )
    full_refresh_interval: Optional[float] = Field(
        default=3600.0, ge=0, strict=True,
        description="Seconds between periodic full refreshes; null disables the timer",
    )
    prefer_few_level: StrictBool = Field(default=False, description="Untagged content may use 4 levels")
    panel_variant: PanelVariant = Field(default=PanelVariant.STANDARD, description="Waveform table")
    width: int = Field(default=DEFAULT_WIDTH, gt=0, strict=True, description="Mock panel width")
    height: int = Field(default=DEFAULT_HEIGHT, gt=0, strict=True, description="Mock panel height")
    granularity: int = Field(default=GRANULARITY, gt=0, strict=True, description="Write block size")
    frames_dir: Optional[StrictStr] = Field(default=None, description="Mock frame dump directory")
    driver: dict[str, Any] = Field(default_factory=dict, description="SpiConfig overrides")

    @model_validator(mode='after')
    def _whole_pixel_pairs(self):
        # A full-frame capture is packed two pixels per byte.
        if (self.width * self.height) % 2:
            raise ValueError(f"width x height must be even, got {self.width}x{self.height}")
        return self

    @property
    def partial_refresh(self) -> bool:
        return self.debounce_delay is not None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> RefreshConfig:
        """Validate a host CONFIG payload. Raises ContractViolation on bad input."""
        if payload is None:
            return cls()
        if not isinstance(payload, Mapping):
            raise ContractViolation(f"configuration must be an object, got {type(payload).__name__}")
        try:
            return cls.model_validate(dict(payload))
        except ValidationError as exc:
            raise ContractViolation(f"invalid configuration: {exc}") from exc

    @classmethod
    def from_file(cls, path: str) -> RefreshConfig:
        with open(path) as f:
            data = f.read()
        try:
            return cls.model_validate_json(data)
        except ValidationError as exc:
            raise ContractViolation(f"{path}: {exc}") from exc
