"""Runtime settings for the distributed mutex."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import MutexConfigurationError


DEFAULT_EXPIRE = 3600 * 24
DEFAULT_REDIS_URL = "redis://localhost:6379/0"

HandlerName = Literal["auto", "transactional", "scripted"]

_HANDLER_ALIASES = {
    "pure": "transactional",
    "script": "scripted",
}


class MutexSettings(BaseModel):
    """Options recognised by :meth:`MutexRuntime.setup`."""

    expire: float = Field(default=DEFAULT_EXPIRE, gt=0)
    block: Optional[float] = Field(default=None, ge=0)
    ns: Optional[str] = None
    size: int = Field(default=1, ge=1)
    reconnect_max: int = Field(default=10, ge=-1)
    owner: Optional[str] = None
    handler: HandlerName = "auto"

    # redis connection
    url: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    password: Optional[str] = None
    db: Optional[int] = None
    path: Optional[str] = None  # unix socket

    @field_validator("reconnect_max", mode="before")
    @classmethod
    def _forever(cls, value: Union[int, str, None]) -> Any:
        if isinstance(value, str) and value.strip().lower() == "forever":
            return -1
        return 10 if value is None else value

    @field_validator("handler", mode="before")
    @classmethod
    def _handler_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return _HANDLER_ALIASES.get(value, value)
        return value

    @field_validator("owner")
    @classmethod
    def _owner_token(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and (not value or any(ch.isspace() for ch in value)):
            raise ValueError("owner must be a non-empty token without whitespace")
        return value

    @property
    def reconnect_forever(self) -> bool:
        return self.reconnect_max < 0

    def redis_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``redis.asyncio.Redis`` built from these settings."""
        kwargs: Dict[str, Any] = {"decode_responses": True}
        if self.path:
            kwargs["unix_socket_path"] = self.path
        else:
            kwargs["host"] = self.host or "localhost"
            kwargs["port"] = self.port or 6379
        if self.password is not None:
            kwargs["password"] = self.password
        if self.db is not None:
            kwargs["db"] = self.db
        return kwargs

    def redis_url(self) -> Optional[str]:
        """Connection url to use, or ``None`` when discrete options were given."""
        if self.url:
            return self.url
        if any(v is not None for v in (self.host, self.port, self.password, self.db, self.path)):
            return None
        return os.getenv("REDIS_URL", DEFAULT_REDIS_URL)

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> "MutexSettings":
        try:
            return cls.model_validate(options)
        except ValidationError as exc:
            raise MutexConfigurationError(f"Invalid mutex settings: {exc}") from exc

    @classmethod
    def from_file(cls, path: Path) -> "MutexSettings":
        data = yaml.safe_load(Path(path).read_text()) or {}
        return cls.from_options(data)
