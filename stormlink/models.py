"""
Shared data model for world connections.

Using Pydantic models for structure, validation and persistence.
Descriptors and history entries are immutable once built; statistics are
mutated only by the connection registry.
"""

import uuid
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field


HISTORY_SCHEMA_VERSION = 1
DEFAULT_USER_AGENT = "Storm/1.0"


def _new_id() -> str:
    return str(uuid.uuid4())


def format_bytes(count: int) -> str:
    """Format a byte count using KB/MB/GB units."""
    value = float(count)
    for unit in ("bytes", "KB", "MB"):
        if value < 1000:
            return f"{value:.0f} {unit}" if unit == "bytes" else f"{value:.1f} {unit}"
        value /= 1000
    return f"{value:.1f} GB"


# =============================================================================
# ENUMS
# =============================================================================


class ProtocolKind(str, Enum):
    """Transport protocol used to reach a world."""
    REQUEST_RESPONSE = "request-response"
    DUPLEX_STREAM = "duplex-stream"
    LOCAL_ONLY = "local-only"


class ConnectionStatus(str, Enum):
    """Lifecycle status of a connection record."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class ConnectionHealth(str, Enum):
    """Derived, non-authoritative connection quality label."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"
    ERROR = "error"

    @property
    def description(self) -> str:
        return _HEALTH_DESCRIPTIONS[self]


_HEALTH_DESCRIPTIONS = {
    ConnectionHealth.DISCONNECTED: "Not connected",
    ConnectionHealth.CONNECTING: "Establishing connection",
    ConnectionHealth.POOR: "High latency or packet loss",
    ConnectionHealth.FAIR: "Moderate performance",
    ConnectionHealth.GOOD: "Good connection quality",
    ConnectionHealth.EXCELLENT: "Optimal performance",
    ConnectionHealth.ERROR: "Connection error",
}


class ConnectionQuality(str, Enum):
    """Overall network quality from diagnostics."""
    NONE = "none"
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"
    UNKNOWN = "unknown"


class InterfaceKind(str, Enum):
    """Kind of network interface carrying the default path."""
    WIFI = "wifi"
    CELLULAR = "cellular"
    WIRED_ETHERNET = "wired-ethernet"
    LOOPBACK = "loopback"
    OTHER = "other"
    UNKNOWN = "unknown"


class WorldFeature(str, Enum):
    PHYSICS = "physics"
    SCRIPTING = "scripting"
    VOICE = "voice"
    MEDIA = "media"
    TELEPORT = "teleport"
    ECONOMY = "economy"
    AI = "ai"
    NARRATIVES = "narratives"
    PROCEDURAL = "procedural"
    SOCIAL = "social"
    PUBLIC_ACCESS = "public-access"
    CUSTOMIZATION = "customization"
    BUILDING = "building"
    EVENTS = "events"


class MaturityRating(str, Enum):
    GENERAL = "general"
    MATURE = "mature"
    ADULT = "adult"


# =============================================================================
# WORLD DESCRIPTORS
# =============================================================================


class Credentials(BaseModel):
    """Authentication credentials for a world."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    username: str = ""
    password: str = Field(default="", repr=False)
    session_token: Optional[str] = Field(default=None, repr=False)
    user_agent: Optional[str] = DEFAULT_USER_AGENT

    @property
    def safe_description(self) -> str:
        return f"User: {self.username}, Has Token: {self.session_token is not None}"


class ConnectionSettings(BaseModel):
    """Per-world connection settings."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    timeout: float = Field(default=30.0, gt=0)
    auto_reconnect: bool = True
    max_reconnect_attempts: int = Field(default=3, ge=0)
    use_compression: bool = True
    enable_encryption: bool = True
    protocol_version: str = "1.0"
    custom_headers: Dict[str, str] = Field(default_factory=dict)
    local_port: Optional[int] = None


class WorldMetadata(BaseModel):
    """Free-form descriptive metadata about a world."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    description: str = ""
    max_avatars: int = 100
    features: Tuple[WorldFeature, ...] = ()
    region: str = "Main"
    version: str = "1.0"
    tags: Tuple[str, ...] = ()
    maturity_rating: MaturityRating = MaturityRating.GENERAL


class WorldDescriptor(BaseModel):
    """
    Identity and configuration of a world endpoint.

    Supplied by the world catalog and never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default_factory=_new_id)
    name: str
    url: str
    protocol: ProtocolKind = ProtocolKind.REQUEST_RESPONSE
    credentials: Optional[Credentials] = None
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)
    metadata: WorldMetadata = Field(default_factory=WorldMetadata)

    @classmethod
    def request_response(
        cls,
        name: str,
        url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        **kwargs,
    ) -> "WorldDescriptor":
        """Descriptor for a login-style request/response grid."""
        credentials = None
        if username is not None and password is not None:
            credentials = Credentials(username=username, password=password)
        settings = ConnectionSettings(
            timeout=30,
            auto_reconnect=True,
            max_reconnect_attempts=3,
            use_compression=True,
            enable_encryption=False,
            protocol_version="HTTP/1.1",
        )
        metadata = WorldMetadata(
            description="Request/response virtual world",
            features=(WorldFeature.PHYSICS, WorldFeature.SCRIPTING, WorldFeature.VOICE, WorldFeature.MEDIA),
        )
        return cls(
            name=name,
            url=url,
            protocol=ProtocolKind.REQUEST_RESPONSE,
            credentials=credentials,
            settings=kwargs.pop("settings", settings),
            metadata=kwargs.pop("metadata", metadata),
            **kwargs,
        )

    @classmethod
    def duplex_stream(cls, name: str, url: str, api_key: Optional[str] = None, **kwargs) -> "WorldDescriptor":
        """Descriptor for a persistent streaming world."""
        credentials = None
        if api_key is not None:
            credentials = Credentials(session_token=api_key)
        settings = ConnectionSettings(
            timeout=15,
            auto_reconnect=True,
            max_reconnect_attempts=5,
            use_compression=True,
            enable_encryption=True,
            protocol_version="WebSocket/1.0",
        )
        metadata = WorldMetadata(
            description="Streaming virtual world",
            max_avatars=1000,
            features=(WorldFeature.AI, WorldFeature.NARRATIVES, WorldFeature.PHYSICS, WorldFeature.SOCIAL),
            region="Nexus",
        )
        return cls(
            name=name,
            url=url,
            protocol=ProtocolKind.DUPLEX_STREAM,
            credentials=credentials,
            settings=kwargs.pop("settings", settings),
            metadata=kwargs.pop("metadata", metadata),
            **kwargs,
        )

    @classmethod
    def local(cls, name: str, **kwargs) -> "WorldDescriptor":
        """Descriptor for an in-process world with no network I/O."""
        settings = ConnectionSettings(
            timeout=1,
            auto_reconnect=False,
            max_reconnect_attempts=0,
            use_compression=False,
            enable_encryption=False,
            protocol_version="Local/1.0",
        )
        metadata = WorldMetadata(
            description="Local world",
            max_avatars=10,
            features=(WorldFeature.PHYSICS, WorldFeature.AI, WorldFeature.PROCEDURAL),
            region="Sandbox",
        )
        return cls(
            name=name,
            url=kwargs.pop("url", "local://sandbox"),
            protocol=ProtocolKind.LOCAL_ONLY,
            settings=kwargs.pop("settings", settings),
            metadata=kwargs.pop("metadata", metadata),
            **kwargs,
        )

    @property
    def has_valid_url(self) -> bool:
        parsed = urlparse(self.url)
        if self.protocol == ProtocolKind.LOCAL_ONLY:
            return parsed.scheme == "local"
        if not parsed.netloc:
            return False
        if self.protocol == ProtocolKind.DUPLEX_STREAM:
            return parsed.scheme in ("ws", "wss")
        return parsed.scheme in ("http", "https")

    @property
    def has_required_credentials(self) -> bool:
        if self.protocol == ProtocolKind.REQUEST_RESPONSE:
            return bool(self.credentials and self.credentials.username and self.credentials.password)
        if self.protocol == ProtocolKind.DUPLEX_STREAM:
            has_token = bool(self.credentials and self.credentials.session_token)
            return has_token or WorldFeature.PUBLIC_ACCESS in self.metadata.features
        return True

    @property
    def is_valid(self) -> bool:
        return bool(self.name) and self.has_valid_url and self.has_required_credentials

    def redacted(self) -> "WorldDescriptor":
        """Copy with secrets removed, for history and export."""
        if self.credentials is None:
            return self
        safe = self.credentials.model_copy(update={"password": "", "session_token": None})
        return self.model_copy(update={"credentials": safe})

    def auth_headers(self) -> Dict[str, str]:
        """Headers to send with handshake requests for this world."""
        headers = dict(self.settings.custom_headers)
        if self.credentials:
            if self.credentials.session_token:
                headers["Authorization"] = f"Bearer {self.credentials.session_token}"
            if self.credentials.user_agent:
                headers["User-Agent"] = self.credentials.user_agent
        return headers


# =============================================================================
# STATISTICS
# =============================================================================


class StatisticsDelta(BaseModel):
    """Incremental traffic update relayed from the transport."""
    bytes_sent: int = Field(default=0, ge=0)
    bytes_received: int = Field(default=0, ge=0)
    packets_sent: int = Field(default=0, ge=0)
    packets_received: int = Field(default=0, ge=0)
    packets_lost: int = Field(default=0, ge=0)
    latency: Optional[float] = Field(default=None, ge=0)
    error: Optional[str] = None

    @classmethod
    def received(cls, frame_size: int) -> "StatisticsDelta":
        return cls(bytes_received=frame_size, packets_received=1)

    @classmethod
    def sent(cls, frame_size: int) -> "StatisticsDelta":
        return cls(bytes_sent=frame_size, packets_sent=1)


class ConnectionStatistics(BaseModel):
    """
    Running traffic statistics for one connection.

    Counters only grow. Latency figures slide with each sample and
    last_error is replaced by every new error.
    """
    model_config = ConfigDict(extra="ignore")

    bytes_received: int = 0
    bytes_sent: int = 0
    packets_received: int = 0
    packets_sent: int = 0
    packets_lost: int = 0
    average_latency: float = 0.0
    peak_latency: float = 0.0
    min_latency: float = 0.0
    latency_samples: int = 0
    reconnect_count: int = 0
    last_error: Optional[str] = None

    @property
    def total_bytes(self) -> int:
        return self.bytes_received + self.bytes_sent

    @property
    def total_packets(self) -> int:
        return self.packets_received + self.packets_sent

    @property
    def packet_loss_rate(self) -> float:
        expected = self.packets_received + self.packets_lost
        return self.packets_lost / expected if expected else 0.0

    @property
    def formatted_data_transfer(self) -> str:
        return format_bytes(self.total_bytes)

    @property
    def formatted_latency(self) -> str:
        return f"{self.average_latency * 1000:.0f} ms"

    def record_latency(self, sample: float) -> None:
        """Fold one round-trip sample (seconds) into the running figures."""
        self.latency_samples += 1
        self.average_latency += (sample - self.average_latency) / self.latency_samples
        self.peak_latency = max(self.peak_latency, sample)
        if self.latency_samples == 1:
            self.min_latency = sample
        else:
            self.min_latency = min(self.min_latency, sample)

    def apply(self, delta: StatisticsDelta) -> None:
        """Merge a traffic delta into these statistics."""
        self.bytes_sent += delta.bytes_sent
        self.bytes_received += delta.bytes_received
        self.packets_sent += delta.packets_sent
        self.packets_received += delta.packets_received
        self.packets_lost += delta.packets_lost
        if delta.latency is not None:
            self.record_latency(delta.latency)
        if delta.error:
            self.last_error = delta.error


# =============================================================================
# HISTORY
# =============================================================================


class ConnectionHistoryEntry(BaseModel):
    """Post-mortem record of a finished connection."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    entry_id: str = Field(default_factory=_new_id)
    world: WorldDescriptor
    connected_at: float
    disconnected_at: Optional[float] = None
    duration: float = 0.0
    success: bool = False
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    error_message: Optional[str] = None
    statistics: ConnectionStatistics = Field(default_factory=ConnectionStatistics)

    @property
    def formatted_duration(self) -> str:
        total = int(self.duration)
        hours, remainder = divmod(total, 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"


class HistoryDocument(BaseModel):
    """Versioned envelope for persisted history."""
    model_config = ConfigDict(extra="ignore")

    schema_version: int = HISTORY_SCHEMA_VERSION
    entries: List[ConnectionHistoryEntry] = Field(default_factory=list)


# =============================================================================
# AGGREGATES AND REPORTS
# =============================================================================


class OverallStatistics(BaseModel):
    active_connections: int = 0
    total_bytes_received: int = 0
    total_bytes_sent: int = 0
    total_packets_received: int = 0
    total_packets_sent: int = 0
    average_latency: float = 0.0
    connection_uptime: float = 0.0

    @property
    def total_data_transfer(self) -> int:
        return self.total_bytes_received + self.total_bytes_sent

    @property
    def formatted_data_transfer(self) -> str:
        return format_bytes(self.total_data_transfer)


class ProtocolStatistics(BaseModel):
    connection_count: int
    success_rate: float
    average_duration: float

    @property
    def formatted_success_rate(self) -> str:
        return f"{self.success_rate * 100:.1f}%"


class ConnectionReport(BaseModel):
    """Summary of connection history over a trailing window."""
    report_date: float
    window: float
    total_connections: int = 0
    successful_connections: int = 0
    failed_connections: int = 0
    average_connection_duration: float = 0.0
    protocol_statistics: Dict[ProtocolKind, ProtocolStatistics] = Field(default_factory=dict)
    currently_active: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_connections == 0:
            return 0.0
        return self.successful_connections / self.total_connections

    @property
    def formatted_success_rate(self) -> str:
        return f"{self.success_rate * 100:.1f}%"


class Reachability(BaseModel):
    """Current network-path state."""
    model_config = ConfigDict(frozen=True)

    is_reachable: bool = False
    interface_kind: InterfaceKind = InterfaceKind.UNKNOWN


class NetworkDiagnostics(BaseModel):
    """Result of a one-shot network diagnostics run."""
    is_connected: bool = False
    connection_type: InterfaceKind = InterfaceKind.UNKNOWN
    latencies: Dict[str, Optional[float]] = Field(default_factory=dict)
    service_reachability: Dict[str, bool] = Field(default_factory=dict)

    @property
    def average_latency(self) -> float:
        samples = [value for value in self.latencies.values() if value]
        return sum(samples) / len(samples) if samples else 0.0

    @property
    def connection_quality(self) -> ConnectionQuality:
        if not self.is_connected:
            return ConnectionQuality.NONE
        latency = self.average_latency
        if latency == 0:
            return ConnectionQuality.UNKNOWN
        if latency < 0.05:
            return ConnectionQuality.EXCELLENT
        if latency < 0.1:
            return ConnectionQuality.GOOD
        if latency < 0.2:
            return ConnectionQuality.FAIR
        return ConnectionQuality.POOR
