"""Pydantic models for settings, canary tokens, alerts and threat records."""

from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import List, Optional


class SecuritySettings(BaseModel):
    """Feature switches for every countermeasure. Read fresh per request."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    sqlBackfireEnabled: bool = Field(default=False)
    sqlBackfireOnScannerDetection: bool = Field(default=True)
    sqlBackfireOnHoneytokenAccess: bool = Field(default=False)

    canaryDocumentsEnabled: bool = Field(default=False)
    canaryPhoneHomeOnOpen: bool = Field(default=True)
    canaryCollectFingerprint: bool = Field(default=True)
    canaryAlertOnCallback: bool = Field(default=True)

    logPoisoningEnabled: bool = Field(default=False)
    logPoisonFakeHeaders: bool = Field(default=True)
    logPoisonTerminalEscape: bool = Field(default=True)
    logPoisonFakePaths: bool = Field(default=True)

    threatScoringEnabled: bool = Field(default=True)
    alertingEnabled: bool = Field(default=False)
    hardBlockEnabled: bool = Field(default=True)
    warnThreshold: int = Field(default=3, ge=1, le=50)
    tarpitThreshold: int = Field(default=7, ge=1, le=50)
    autoBlockThreshold: int = Field(default=12, ge=3, le=50)
    maxAlertsStored: int = Field(default=500, ge=10, le=10000)

    @classmethod
    def disabled(cls) -> "SecuritySettings":
        """Every countermeasure off. Used when the settings store is unreachable."""
        return cls(
            sqlBackfireEnabled=False,
            sqlBackfireOnScannerDetection=False,
            sqlBackfireOnHoneytokenAccess=False,
            canaryDocumentsEnabled=False,
            canaryAlertOnCallback=False,
            logPoisoningEnabled=False,
            threatScoringEnabled=False,
            alertingEnabled=False,
            hardBlockEnabled=False,
        )


class SecuritySettingsUpdate(BaseModel):
    """Partial update accepted by POST /api/security-settings."""

    model_config = ConfigDict(extra="forbid")

    sqlBackfireEnabled: Optional[bool] = None
    sqlBackfireOnScannerDetection: Optional[bool] = None
    sqlBackfireOnHoneytokenAccess: Optional[bool] = None
    canaryDocumentsEnabled: Optional[bool] = None
    canaryPhoneHomeOnOpen: Optional[bool] = None
    canaryCollectFingerprint: Optional[bool] = None
    canaryAlertOnCallback: Optional[bool] = None
    logPoisoningEnabled: Optional[bool] = None
    logPoisonFakeHeaders: Optional[bool] = None
    logPoisonTerminalEscape: Optional[bool] = None
    logPoisonFakePaths: Optional[bool] = None
    threatScoringEnabled: Optional[bool] = None
    alertingEnabled: Optional[bool] = None
    hardBlockEnabled: Optional[bool] = None
    warnThreshold: Optional[int] = Field(default=None, ge=1, le=50)
    tarpitThreshold: Optional[int] = Field(default=None, ge=1, le=50)
    autoBlockThreshold: Optional[int] = Field(default=None, ge=3, le=50)
    maxAlertsStored: Optional[int] = Field(default=None, ge=10, le=10000)


class CanaryDocumentSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    description: str
    contentType: str = "text/html"

    @field_validator("path")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("canary document paths must start with '/'")
        return value


class CanaryToken(BaseModel):
    """Metadata persisted for every decoy download."""

    model_config = ConfigDict(extra="ignore")

    token: str = Field(..., pattern=r"^[a-f0-9]{32}$")
    documentPath: str = "/"
    hashedIp: str
    userAgent: str = ""
    issuedAt: str
    ttl: int = Field(..., gt=0)
    opened: bool = False
    openedAt: Optional[str] = None


class JsFingerprint(BaseModel):
    """Browser fingerprint posted by the decoy page's script."""

    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None
    cores: Optional[float] = None
    memory: Optional[float] = None
    screenWidth: Optional[float] = None
    screenHeight: Optional[float] = None
    colorDepth: Optional[float] = None
    touchSupport: Optional[bool] = None
    canvasHash: Optional[str] = None
    realIp: Optional[str] = None


class CanaryAlert(BaseModel):
    token: str
    eventType: str
    hashedIp: str
    downloaderIp: str = "unknown"
    documentPath: str = "unknown"
    userAgent: str = ""
    acceptLanguage: str = ""
    fingerprint: Optional[JsFingerprint] = None
    timestamp: str


class ThreatScoreRecord(BaseModel):
    key: str
    score: int = 0
    level: str = "CLEAN"
    reason: Optional[str] = None


class CanaryAlertList(BaseModel):
    alerts: List[dict] = Field(default_factory=list)
