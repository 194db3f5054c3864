"""
Client settings, environment overrides and the default-setting fallback.
"""

import ipaddress
import logging
import os
import socket
import ssl
from importlib import resources
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

from scriptclient.counter import UNIT_MESSAGE
from scriptclient.pipeline import default_ssl_context

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6633
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_PAYLOAD_RESOURCE = "default_payload.bin"

ENV_PREFIX = "SCRIPTCLIENT_"


class EventStoreSettings(BaseModel):
    """Where session events are stored."""

    record_events: bool = True
    database_url: str = "sqlite:///data/scriptclient.db"
    log_dir: str = "data/logs"

    @classmethod
    def from_env(cls, **overrides):
        """Build settings from SCRIPTCLIENT_* variables; explicit overrides win."""
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ClientSettings(EventStoreSettings):
    host: str
    port: int
    secured: bool = False
    payload_path: Optional[str] = None
    data_limit: int = 0
    receive_unit: Literal["message", "byte"] = UNIT_MESSAGE
    connect_timeout: Optional[float] = DEFAULT_CONNECT_TIMEOUT
    cafile: Optional[str] = None
    certfile: Optional[str] = None
    keyfile: Optional[str] = None
    encoding: str = "utf-8"

    @field_validator("host")
    @classmethod
    def validate_host(cls, v):
        # Try to parse as IP address or hostname
        try:
            ipaddress.ip_address(v)
        except ValueError:
            if not v or len(v) > 253:
                raise ValueError("Invalid hostname length")
            if not all(c.isalnum() or c in ".-" for c in v):
                raise ValueError("Host must be a valid IP address or hostname")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        if not (1 <= v <= 65535):
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("data_limit")
    @classmethod
    def validate_data_limit(cls, v):
        if v < 0:
            raise ValueError("Receive threshold cannot be negative")
        return v

    @field_validator("connect_timeout")
    @classmethod
    def validate_connect_timeout(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Connect timeout must be positive")
        return v


def parse_bool(value) -> bool:
    """Only a case-insensitive "true" enables a flag."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def local_host_address() -> str:
    """Resolve this machine's own address from its hostname."""
    hostname = socket.gethostname()
    try:
        return socket.gethostbyname(hostname)
    except OSError as e:
        logger.warning(f"Could not resolve local hostname {hostname}: {e}, using 127.0.0.1")
        return "127.0.0.1"


def default_payload_path() -> str:
    return str(resources.files("scriptclient").joinpath("data").joinpath(DEFAULT_PAYLOAD_RESOURCE))


def default_settings(**overrides) -> ClientSettings:
    """Fallback used when the command line does not name a target."""
    settings = ClientSettings.from_env(
        host=local_host_address(),
        port=DEFAULT_PORT,
        payload_path=default_payload_path(),
        **overrides,
    )
    settings = settings.model_copy(update={"secured": True})
    logger.warning(
        f"Using default settings: host={settings.host} port={settings.port} "
        f"secured={settings.secured} payload={settings.payload_path}"
    )
    return settings


def build_ssl_context(settings: ClientSettings) -> ssl.SSLContext:
    """TLS context for the secured pipeline.

    Without a CA file the server certificate is not verified, which is what
    test endpoints with self-signed certificates need.
    """
    if settings.cafile:
        context = ssl.create_default_context(cafile=settings.cafile)
        context.check_hostname = False
    else:
        context = default_ssl_context()
    if settings.certfile:
        context.load_cert_chain(settings.certfile, settings.keyfile)
    return context
