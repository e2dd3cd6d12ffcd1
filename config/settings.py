"""
Configuration settings for the tiered KYC onboarding engine.
Uses pydantic-settings for environment variable management.
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Keys
    GEMINI_API_KEY: str = Field("", description="Google Gemini API key for OCR and face detection (optional)")

    # Application Mode
    DEBUG: bool = Field(False, description="Enable debug mode")
    DEMO_MODE: bool = Field(True, description="Use the in-memory KYC contract instead of a real chain")
    LOG_LEVEL: str = Field("INFO", description="Root log level when DEBUG is off")

    # Backend adjudicator
    KYC_API_URL: str = Field("http://localhost:8000", description="Base URL of the KYC backend")
    HTTP_TIMEOUT_SECONDS: float = Field(30.0, description="Timeout for backend HTTP calls")

    # Chain Configuration
    CHAIN_ID: int = Field(43113, description="Chain the KYC contract is deployed on")
    CHAIN_NAME: str = Field("Avalanche Fuji", description="Human-readable chain name")
    NATIVE_CURRENCY: str = Field("AVAX", description="Native currency symbol used for the fee")
    KYC_MANAGER_ADDRESS: Optional[str] = Field(
        "0x00000000000000000000000000000000000000a1",
        description="KYCManager contract address (None = not deployed)"
    )
    KYC_FEE_WEI: int = Field(10**16, description="Payable fee for submitKYC / requestUpgrade")
    TX_CONFIRMATION_TIMEOUT_SECONDS: float = Field(120.0, description="Max wait for a transaction receipt")

    # File Upload Configuration
    MAX_FILE_SIZE_MB: int = Field(10, description="Maximum file upload size in MB")

    # Verification thresholds
    MAX_VALIDATION_RETRIES: int = Field(3, description="Document validation retries per capture")
    LOCAL_AUTO_APPROVAL_THRESHOLD: int = Field(70, description="Reconciled score needed for local auto-approval")
    AUTO_APPROVAL_THRESHOLD: int = Field(80, description="Backend auto-approval threshold")
    MANUAL_REVIEW_THRESHOLD: int = Field(50, description="Backend manual review threshold")
    FACE_DETECTION_THRESHOLD: int = Field(50, description="Minimum selfie face score")
    LIVENESS_SCORE_THRESHOLD: int = Field(70, description="Minimum liveness score")
    FALLBACK_FACE_SCORE: int = Field(70, description="Face score used when the detector is unavailable")
    MINIMUM_AGE: int = Field(18, description="Minimum investor age")
    BLOCKED_COUNTRIES: list = Field(
        default=[408, 364, 760, 729, 192],
        description="ISO 3166-1 numeric codes where KYC is not offered"
    )

    # Server Configuration
    HOST: str = Field("0.0.0.0", description="Server host")
    PORT: int = Field(8000, description="Server port")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    @property
    def max_file_size_bytes(self) -> int:
        return self.MAX_FILE_SIZE_MB * 1024 * 1024


class ChainConfig(BaseModel):
    """
    Read-only snapshot of the chain the workflow talks to.
    Injected into the workflow instead of being read from globals.
    """
    chain_id: int
    chain_name: str
    kyc_manager_address: Optional[str] = None
    kyc_fee_wei: int = 0
    native_currency: str = "ETH"

    model_config = {"frozen": True}

    @property
    def is_deployed(self) -> bool:
        address = (self.kyc_manager_address or "").lower()
        return bool(address) and address != "0x" + "0" * 40

    @classmethod
    def from_settings(cls, s: "Settings") -> "ChainConfig":
        return cls(
            chain_id=s.CHAIN_ID,
            chain_name=s.CHAIN_NAME,
            kyc_manager_address=s.KYC_MANAGER_ADDRESS,
            kyc_fee_wei=s.KYC_FEE_WEI,
            native_currency=s.NATIVE_CURRENCY,
        )


def get_project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent


def validate_settings() -> tuple[bool, list[str]]:
    """
    Validate that all required settings are present.
    Returns (is_valid, list of missing/invalid settings).
    """
    issues = []

    try:
        s = settings

        if not s.GEMINI_API_KEY or s.GEMINI_API_KEY == "your_gemini_api_key_here":
            issues.append("GEMINI_API_KEY not set (optional - OCR and face detection fall back)")

        if not ChainConfig.from_settings(s).is_deployed:
            issues.append(f"KYC_MANAGER_ADDRESS is not configured for {s.CHAIN_NAME}")

        if s.MANUAL_REVIEW_THRESHOLD > s.AUTO_APPROVAL_THRESHOLD:
            issues.append("MANUAL_REVIEW_THRESHOLD must not exceed AUTO_APPROVAL_THRESHOLD")

    except Exception as e:
        issues.append(f"Configuration error: {str(e)}")

    blocking = [i for i in issues if "optional" not in i.lower()]
    return len(blocking) == 0, issues


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging from settings (DEBUG wins over LOG_LEVEL)."""
    if level is None:
        level = "DEBUG" if settings.DEBUG else settings.LOG_LEVEL
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Load .env from project root
env_path = get_project_root() / ".env"
if env_path.exists():
    from dotenv import load_dotenv
    load_dotenv(env_path)

# Global settings instance
settings = Settings()
