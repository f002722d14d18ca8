"""
Engine configuration settings.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Self


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Adaptive Exam Engine"
    APP_VERSION: str = "0.1.0"
    ENV: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # CAT stopping rule
    # SE = 0.30 corresponds to reliability ~0.91 (reliability = 1 - SE²)
    CAT_SE_THRESHOLD: float = Field(default=0.30, gt=0.0)
    CAT_MIN_ITEMS: int = Field(default=5, ge=1)

    # Ability estimation
    CAT_PRIOR_MEAN: float = 0.0
    CAT_PRIOR_SD: float = Field(default=1.0, gt=0.0)
    CAT_QUADRATURE_POINTS: int = Field(default=61, ge=11)
    # Newton-Raphson MLE takes over from EAP once this many responses exist
    # and the pattern is mixed (MLE is undefined for all-correct/all-incorrect).
    CAT_MLE_MIN_RESPONSES: int = Field(default=5, ge=1)
    CAT_MLE_MAX_ITERATIONS: int = Field(default=25, ge=1)
    # |theta| beyond this bound is treated as MLE divergence
    CAT_THETA_BOUND: float = Field(default=6.0, gt=0.0)

    # Item selection / exposure control
    CAT_EXPOSURE_PERCENTILE: float = Field(default=90.0, ge=0.0, le=100.0)
    CAT_EXPOSURE_PENALTY: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Information multiplier for items above the exposure percentile",
    )
    # K=1 disables randomesque selection (always the single best item)
    CAT_RANDOMESQUE_K: int = Field(default=1, ge=1)

    # Sessions idle longer than this are abandoned by expire_idle_sessions()
    CAT_SESSION_IDLE_TIMEOUT_SECONDS: int = Field(default=3600, ge=1)

    # Exam generation
    GENERATION_DIFFICULTY_BANDS: int = Field(default=3, ge=3, le=5)
    GENERATION_POOL_OVERSAMPLING: int = Field(
        default=2,
        ge=1,
        description="Adaptive pools hold up to this multiple of each objective's quota",
    )
    GENERATION_JOB_TTL_SECONDS: int = Field(default=900, ge=1)

    # Calibration (MML-EM)
    CALIBRATION_MIN_SAMPLE_SIZE: int = Field(default=30, ge=1)
    CALIBRATION_MAX_ITERATIONS: int = Field(default=100, ge=1)
    CALIBRATION_TOLERANCE: float = Field(default=1e-4, gt=0.0)
    CALIBRATION_QUADRATURE_POINTS: int = Field(default=41, ge=11)
    CALIBRATION_JOB_TTL_SECONDS: int = Field(default=3600, ge=1)

    # Results
    MASTERY_THETA_CUT: float = 0.0
    CERTIFICATION_PASSING_THETA: float = 0.5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra fields from .env not defined in Settings
    )

    @model_validator(mode="after")
    def validate_quadrature_grid(self) -> Self:
        """Validate that the EAP quadrature grid is symmetric around zero."""
        if self.CAT_QUADRATURE_POINTS % 2 == 0:
            raise ValueError(
                "CAT_QUADRATURE_POINTS must be odd so that theta=0 is a node, "
                f"got {self.CAT_QUADRATURE_POINTS}"
            )
        return self


settings = Settings()
