"""Pydantic models for configuration and data validation."""

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class StorageConfig(BaseModel):
    """File staging locations."""

    upload_dir: str = Field(
        default="data/uploads", description="Root for job-scoped input directories"
    )
    output_dir: str = Field(
        default="data/outputs", description="Root for operation-scoped output directories"
    )


class StoreConfig(BaseModel):
    """Job store settings."""

    db_path: str = Field(default="data/pdfstation.db", description="SQLite database for job rows")


class ExchangeConfig(BaseModel):
    """Event exchange settings (topics, partitioning, redelivery)."""

    db_path: str = Field(
        default="data/pdfstation.db", description="SQLite database holding the message log"
    )
    partitions: int = Field(default=8, ge=1, description="Partitions per topic")
    consumer_group: str = Field(
        default="pdf-processor-group", description="Consumer group of the job processor"
    )
    submitted_topic: str = Field(default="pdf-jobs", description="Channel for new submissions")
    status_topic: str = Field(default="pdf-status", description="Channel for status broadcasts")
    dead_letter_topic: str = Field(
        default="pdf-jobs-dlq", description="Channel for jobs that exhausted their retries"
    )
    lease_timeout_s: int = Field(
        default=600,
        gt=0,
        description="Seconds before an unacknowledged delivery is considered abandoned",
    )
    redelivery_backoff_s: float = Field(
        default=1.0, ge=0.0, description="Base delay before a rejected message is redelivered"
    )
    max_backoff_s: float = Field(
        default=30.0, ge=0.0, description="Upper bound for the exponential redelivery delay"
    )

    @model_validator(mode="after")
    def distinct_topics(self) -> "ExchangeConfig":
        """Validate that the three channels do not collide."""
        topics = {self.submitted_topic, self.status_topic, self.dead_letter_topic}
        if len(topics) != 3:
            raise ValueError("submitted, status and dead-letter topics must be distinct")
        return self


class ProcessingConfig(BaseModel):
    """Job processor and worker pool parameters."""

    max_retries: int = Field(default=3, ge=1, description="Failed attempts before a job is FAILED")
    default_quality: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Compression quality when a job carries none"
    )
    workers: int = Field(default=4, ge=1, description="Consumer threads in the worker pool")
    poll_interval_s: float = Field(
        default=0.5, gt=0.0, description="Idle sleep between polls of the exchange"
    )


class CompressionConfig(BaseModel):
    """Compression engine tuning."""

    icon_threshold_px: int = Field(
        default=100, ge=1, description="Images narrower or shorter than this are left alone"
    )
    print_dpi: int = Field(default=300, gt=0, description="Target DPI for quality > 0.8")
    screen_dpi: int = Field(default=150, gt=0, description="Target DPI for quality in (0.5, 0.8]")
    web_dpi: int = Field(default=96, gt=0, description="Target DPI for quality <= 0.5")
    dpi_slack: float = Field(
        default=1.2, ge=1.0, description="Images within target * slack are not resampled"
    )
    downsample_threshold: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="Only resize when the scale factor falls below this value",
    )
    min_encode_quality: float = Field(
        default=0.75, ge=0.0, le=1.0, description="JPEG quality used for quality=0"
    )
    encode_quality_span: float = Field(
        default=0.20, ge=0.0, le=1.0, description="JPEG quality added at quality=1"
    )

    @model_validator(mode="after")
    def encode_band_within_range(self) -> "CompressionConfig":
        """Validate the JPEG quality band stays within [0, 1]."""
        if self.min_encode_quality + self.encode_quality_span > 1.0:
            raise ValueError("min_encode_quality + encode_quality_span must be <= 1.0")
        return self


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Root log level for pdfstation loggers"
    )


class StationConfig(BaseModel):
    """Complete application configuration with validation."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "StationConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "StationConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "db" in cli_args:
            config_dict["store"]["db_path"] = cli_args["db"]
            config_dict["exchange"]["db_path"] = cli_args["db"]
        if "workers" in cli_args:
            config_dict["processing"]["workers"] = cli_args["workers"]
        if "max_retries" in cli_args:
            config_dict["processing"]["max_retries"] = cli_args["max_retries"]
        if "upload_dir" in cli_args:
            config_dict["storage"]["upload_dir"] = cli_args["upload_dir"]
        if "output_dir" in cli_args:
            config_dict["storage"]["output_dir"] = cli_args["output_dir"]
        if "log_level" in cli_args:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return StationConfig.from_dict(config_dict)
