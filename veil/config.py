"""
Veil Configuration
"""

from __future__ import annotations
import json
import logging
from logging.handlers import RotatingFileHandler
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from veil.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_BACKOFF_SEC,
    DEFAULT_CONFIRM_INTERVAL_SEC,
    DEFAULT_CONFIRM_ATTEMPTS,
    DEFAULT_DECIMALS,
    DEFAULT_MAX_PENDING_CREDIT_COUNTER,
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerConfig:
    """Ledger RPC configuration."""
    rpc_url: str = "http://127.0.0.1:8899"
    timeout_sec: float = 30.0
    commitment: str = "confirmed"


@dataclass
class SubmissionConfig:
    """Retry and confirmation policy."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_sec: float = DEFAULT_BACKOFF_SEC
    confirm_interval_sec: float = DEFAULT_CONFIRM_INTERVAL_SEC
    confirm_attempts: int = DEFAULT_CONFIRM_ATTEMPTS


@dataclass
class TokenConfig:
    """Token mint parameters."""
    decimals: int = DEFAULT_DECIMALS
    max_pending_credit_counter: int = DEFAULT_MAX_PENDING_CREDIT_COUNTER
    auditor_pubkey: Optional[str] = None      # hex ElGamal pubkey


@dataclass
class ProverConfig:
    """Receipt prover (Noir circuit) configuration."""
    circuit_dir: str = "./circuits/payment_receipt"
    circuit_name: str = "payment_receipt"
    nargo_path: str = "nargo"
    bb_path: str = "bb"
    timeout_sec: Optional[float] = 120.0


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    max_size_mb: int = 100
    backup_count: int = 5


@dataclass
class VeilConfig:
    """
    Complete configuration.

    All settings for a confidential-balance / receipt session.
    """
    name: str = "veil"

    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    token: TokenConfig = field(default_factory=TokenConfig)
    prover: ProverConfig = field(default_factory=ProverConfig)
    log: LogConfig = field(default_factory=LogConfig)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.ledger.rpc_url.startswith(("http://", "https://")):
            errors.append(f"Invalid RPC URL: {self.ledger.rpc_url}")

        if self.submission.max_attempts < 1:
            errors.append("max_attempts must be at least 1")

        if self.submission.backoff_sec < 0:
            errors.append("backoff_sec cannot be negative")

        if self.submission.confirm_attempts < 1:
            errors.append("confirm_attempts must be at least 1")

        if not 0 <= self.token.decimals <= 18:
            errors.append(f"Invalid decimals: {self.token.decimals}")

        if self.token.auditor_pubkey is not None:
            try:
                if len(bytes.fromhex(self.token.auditor_pubkey)) != 32:
                    errors.append("auditor_pubkey must be 32 bytes")
            except ValueError:
                errors.append("auditor_pubkey must be hex")

        if self.prover.timeout_sec is not None and self.prover.timeout_sec <= 0:
            errors.append("prover timeout must be positive")

        return errors

    def save(self, path: str) -> None:
        """Save configuration to file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: str) -> "VeilConfig":
        """Load configuration from file."""
        with open(path, 'r') as f:
            data = json.load(f)

        config = cls(name=data.get("name", "veil"))

        if "ledger" in data:
            config.ledger = LedgerConfig(**data["ledger"])

        if "submission" in data:
            config.submission = SubmissionConfig(**data["submission"])

        if "token" in data:
            config.token = TokenConfig(**data["token"])

        if "prover" in data:
            config.prover = ProverConfig(**data["prover"])

        if "log" in data:
            config.log = LogConfig(**data["log"])

        logger.info(f"Configuration loaded from {path}")
        return config

    def to_dict(self) -> dict:
        """Export configuration as dictionary."""
        return {
            "name": self.name,
            "ledger": asdict(self.ledger),
            "submission": asdict(self.submission),
            "token": asdict(self.token),
            "prover": asdict(self.prover),
            "log": asdict(self.log),
        }


def setup_logging(config: LogConfig) -> None:
    """Root logging for the CLI and embedding applications."""
    level = getattr(logging, config.level.upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        handlers.append(RotatingFileHandler(
            config.file,
            maxBytes=config.max_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        ))

    logging.basicConfig(level=level, format=config.format, handlers=handlers)

    # httpx logs every RPC round trip at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
