"""
VisitProof configuration.

Loaded from an optional YAML file, then overridden by environment:

    VISITPROOF_CONFIG          path of the YAML file
    VISITPROOF_SIGN_SECRET     proof token HMAC secret
    VISITPROOF_WEBHOOK_SECRET  settlement event HMAC secret
    VISITPROOF_STORE_DSN       mem:// | sqlite:///path | sqlite:///:memory:

Example:

    qr:
      require_signature: true
      expiry_ms: 300000
      namespace: ZZIK
    geo:
      default_radius_m: 120
      max_accuracy_m: 100
    receipt:
      required: false
    settlement:
      max_attempts: 5
      drain_order: fifo
    rate_limits:
      receipt_verify: {limit: 5, window_sec: 60}
    places:
      - {id: gangnam, lat: 37.4979, lng: 127.0276, radius_m: 120}

Secrets are validated by require_secrets(), which the runtime calls at
startup; a missing secret is a startup failure.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from visitproof.core.exceptions import ConfigurationError
from visitproof.core.models import GeoPoint, Geofence, Place


ENV_CONFIG         = "VISITPROOF_CONFIG"
ENV_SIGN_SECRET    = "VISITPROOF_SIGN_SECRET"
ENV_WEBHOOK_SECRET = "VISITPROOF_WEBHOOK_SECRET"
ENV_STORE_DSN      = "VISITPROOF_STORE_DSN"


@dataclass
class QrPolicy:
    require_signature: bool = True
    expiry_ms:         int  = 300_000
    namespace:         str  = "ZZIK"


@dataclass
class GeoPolicy:
    default_radius_m: float = 120.0
    max_accuracy_m:   float = 100.0


@dataclass
class ConsensusPolicy:
    threshold:   int = 3
    window_ms:   int = 1000
    buffer_size: int = 10


@dataclass
class SettlementPolicy:
    max_attempts:  int = 5
    lock_ttl_ms:   int = 60_000
    batch_limit:   int = 10
    drain_order:   str = "fifo"
    currency:      str = "KRW"
    reward_amount: int = 1000
    provider:      str = "mock"


@dataclass
class RateLimitPolicy:
    limit:      int = 60
    window_sec: int = 60


def _default_rate_limits() -> Dict[str, RateLimitPolicy]:
    return {
        "verify_location": RateLimitPolicy(60, 60),
        "scan_verify":     RateLimitPolicy(60, 60),
        "verify_complete": RateLimitPolicy(60, 60),
        "receipt_verify":  RateLimitPolicy(5, 60),
    }


_DEFAULT_PLACES = [
    {"id": "gangnam", "lat": 37.4979, "lng": 127.0276},
    {"id": "seongsu", "lat": 37.5446, "lng": 127.0565},
    {"id": "hongdae", "lat": 37.5563, "lng": 126.9220},
]


@dataclass
class VisitProofConfig:
    sign_secret:      Optional[str] = None
    webhook_secret:   Optional[str] = None
    store_dsn:        str = "mem://"
    receipt_required: bool = False
    qr:               QrPolicy         = field(default_factory=QrPolicy)
    geo:              GeoPolicy        = field(default_factory=GeoPolicy)
    consensus:        ConsensusPolicy  = field(default_factory=ConsensusPolicy)
    settlement:       SettlementPolicy = field(default_factory=SettlementPolicy)
    rate_limits:      Dict[str, RateLimitPolicy] = field(default_factory=_default_rate_limits)
    places:           List[Place] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.places:
            self.places = [_place(p, self.geo) for p in _DEFAULT_PLACES]

    # ── Loading ───────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VisitProofConfig":
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigurationError("Configuration root must be a mapping")

        geo = _section(GeoPolicy, data.get("geo"), "geo")
        rate_limits = _default_rate_limits()
        for name, spec in (data.get("rate_limits") or {}).items():
            rate_limits[name] = _section(RateLimitPolicy, spec, f"rate_limits.{name}")

        secrets = data.get("secrets") or {}
        return cls(
            sign_secret=      secrets.get("sign"),
            webhook_secret=   secrets.get("webhook"),
            store_dsn=        (data.get("store") or {}).get("dsn", "mem://"),
            receipt_required= bool((data.get("receipt") or {}).get("required", False)),
            qr=               _section(QrPolicy, data.get("qr"), "qr"),
            geo=              geo,
            consensus=        _section(ConsensusPolicy, data.get("consensus"), "consensus"),
            settlement=       _section(SettlementPolicy, data.get("settlement"), "settlement"),
            rate_limits=      rate_limits,
            places=           [_place(p, geo) for p in data.get("places") or []],
        )

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        env:  Optional[Mapping[str, str]] = None,
    ) -> "VisitProofConfig":
        """Read YAML (if any) and apply environment overrides."""
        env = os.environ if env is None else env
        if path is None and env.get(ENV_CONFIG):
            path = Path(env[ENV_CONFIG])

        data: Dict[str, Any] = {}
        if path is not None:
            path = Path(path)
            if not path.exists():
                raise ConfigurationError("Config file not found", {"path": str(path)})
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    "Config file is not valid YAML", {"path": str(path), "error": exc}
                ) from exc

        config = cls.from_dict(data)
        if env.get(ENV_SIGN_SECRET):
            config.sign_secret = env[ENV_SIGN_SECRET]
        if env.get(ENV_WEBHOOK_SECRET):
            config.webhook_secret = env[ENV_WEBHOOK_SECRET]
        if env.get(ENV_STORE_DSN):
            config.store_dsn = env[ENV_STORE_DSN]
        return config

    # ── Validation ────────────────────────────────────────────

    def require_secrets(self) -> None:
        if not self.sign_secret:
            raise ConfigurationError(
                "Signing secret is not configured", {"env": ENV_SIGN_SECRET}
            )
        if not self.webhook_secret:
            raise ConfigurationError(
                "Webhook secret is not configured", {"env": ENV_WEBHOOK_SECRET}
            )

    def rate_limit_table(self) -> Dict[str, Dict[str, int]]:
        return {
            name: {"limit": p.limit, "window_sec": p.window_sec}
            for name, p in self.rate_limits.items()
        }


def _section(cls, raw: Optional[Mapping[str, Any]], name: str):
    if raw is None:
        return cls()
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    try:
        return cls(**raw)
    except TypeError as exc:
        raise ConfigurationError(
            f"Unknown key in config section '{name}'", {"error": exc}
        ) from exc


def _place(raw: Mapping[str, Any], geo: GeoPolicy) -> Place:
    try:
        return Place(
            place_id= str(raw["id"]),
            fence=    Geofence(
                center=              GeoPoint(float(raw["lat"]), float(raw["lng"])),
                radius_meters=       float(raw.get("radius_m", geo.default_radius_m)),
                max_accuracy_meters= float(raw.get("max_accuracy_m", geo.max_accuracy_m)),
            ),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError("Invalid place entry", {"place": raw, "error": exc}) from exc
