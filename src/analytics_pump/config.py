import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .batching import OversizedRecordPolicy
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MIB = 1_048_576

ALLOWED_PUMP_MODES = ("raw", "aggregate", "uptime")

_TRUTHY = ("true", "1", "yes", "on")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    service_name: str
    environment: str
    distribution_bucket: str

    # --- Pump Behaviour ---
    log_level: str
    pump_modes: tuple[str, ...]
    track_all_paths: bool
    ignore_tag_prefix_list: tuple[str, ...]
    aggregation_minutes: int
    ignore_aggregations: tuple[str, ...]
    keep_error_list: bool
    tag_alert_threshold: int

    # --- Batching & Sharding ---
    max_insert_batch_size_bytes: int
    max_document_size_bytes: int
    max_batch_records: int
    oversized_record_policy: OversizedRecordPolicy
    table_sharding: bool
    sort_before_sharding: bool

    # --- Storage Targets ---
    raw_table_name: str
    aggregate_table_name: str
    uptime_table_name: str
    s3_key_prefix: str
    kms_key_id: str | None
    max_write_workers: int
    timeout_guard_threshold_seconds: int

    # --- Retry Queue ---
    retry_queue_url: str | None
    max_requeue_attempts: int

    # --- Derived Properties ---
    @property
    def timeout_guard_threshold_ms(self) -> int:
        return self.timeout_guard_threshold_seconds * 1000

    @property
    def max_insert_batch_size_mb(self) -> float:
        return self.max_insert_batch_size_bytes / MIB

    @property
    def writes_raw(self) -> bool:
        return "raw" in self.pump_modes

    @property
    def writes_aggregates(self) -> bool:
        return "aggregate" in self.pump_modes

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            service_name = os.environ["SERVICE_NAME"]
            environment = os.environ["ENVIRONMENT"]
            distribution_bucket = os.environ["DISTRIBUTION_BUCKET_NAME"]

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            pump_modes = tuple(
                mode.lower() for mode in _env_list("PUMP_MODES") or ("raw", "aggregate")
            )
            unknown_modes = [m for m in pump_modes if m not in ALLOWED_PUMP_MODES]
            if unknown_modes:
                raise ValueError(
                    f"PUMP_MODES must only contain {list(ALLOWED_PUMP_MODES)}, "
                    f"got {unknown_modes}"
                )

            # --- Aggregation options ---
            track_all_paths = _env_flag("TRACK_ALL_PATHS", "false")
            ignore_tag_prefix_list = _env_list("IGNORE_TAG_PREFIX_LIST")
            ignore_aggregations = _env_list("IGNORE_AGGREGATIONS")
            keep_error_list = _env_flag("KEEP_ERROR_LIST", "false")

            aggregation_minutes = int(os.getenv("AGGREGATION_MINUTES", "0"))
            if not 0 <= aggregation_minutes <= 60:
                raise ValueError("AGGREGATION_MINUTES must be between 0 and 60.")

            tag_alert_threshold = int(os.getenv("TAG_ALERT_THRESHOLD", "1000"))
            if tag_alert_threshold <= 0:
                raise ValueError("TAG_ALERT_THRESHOLD must be a positive integer.")

            # --- Handle optional and numeric variables with validation ---
            max_insert_batch_size_bytes = int(
                os.getenv("MAX_INSERT_BATCH_SIZE_BYTES", str(10 * MIB))
            )
            if max_insert_batch_size_bytes <= 0:
                raise ValueError(
                    "MAX_INSERT_BATCH_SIZE_BYTES must be a positive integer."
                )

            max_document_size_bytes = int(
                os.getenv("MAX_DOCUMENT_SIZE_BYTES", str(10 * MIB))
            )
            if max_document_size_bytes <= 0:
                raise ValueError("MAX_DOCUMENT_SIZE_BYTES must be a positive integer.")

            max_batch_records = int(os.getenv("MAX_BATCH_RECORDS", "1000"))
            if max_batch_records <= 0:
                raise ValueError("MAX_BATCH_RECORDS must be a positive integer.")

            oversized_record_policy = OversizedRecordPolicy(
                os.getenv("OVERSIZED_RECORD_POLICY", "redact").lower()
            )

            table_sharding = _env_flag("TABLE_SHARDING", "false")
            sort_before_sharding = _env_flag("SORT_BEFORE_SHARDING", "false")

            # --- Storage targets ---
            raw_table_name = os.getenv("RAW_TABLE_NAME", "tyk_analytics")
            aggregate_table_name = os.getenv("AGGREGATE_TABLE_NAME", "tyk_aggregated")
            uptime_table_name = os.getenv("UPTIME_TABLE_NAME", "tyk_uptime_analytics")
            for name, value in (
                ("RAW_TABLE_NAME", raw_table_name),
                ("AGGREGATE_TABLE_NAME", aggregate_table_name),
                ("UPTIME_TABLE_NAME", uptime_table_name),
            ):
                if not value:
                    raise ValueError(f"{name} must not be empty.")

            s3_key_prefix = os.getenv("S3_KEY_PREFIX", "analytics").strip("/")
            kms_key_id = os.getenv("KMS_KEY_ID") or None

            max_write_workers = int(os.getenv("MAX_WRITE_WORKERS", "8"))
            if max_write_workers <= 0:
                raise ValueError("MAX_WRITE_WORKERS must be a positive integer.")

            timeout_guard_threshold_seconds = int(
                os.getenv("TIMEOUT_GUARD_THRESHOLD_SECONDS", "10")
            )
            if timeout_guard_threshold_seconds <= 0:
                raise ValueError(
                    "TIMEOUT_GUARD_THRESHOLD_SECONDS must be a positive integer."
                )

            # --- Retry queue (defaults to the queue the event came from) ---
            retry_queue_url = os.getenv("RETRY_QUEUE_URL") or None
            max_requeue_attempts = int(os.getenv("MAX_REQUEUE_ATTEMPTS", "5"))
            if max_requeue_attempts < 0:
                raise ValueError("MAX_REQUEUE_ATTEMPTS must not be negative.")

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            service_name=service_name,
            environment=environment,
            distribution_bucket=distribution_bucket,
            log_level=log_level,
            pump_modes=pump_modes,
            track_all_paths=track_all_paths,
            ignore_tag_prefix_list=ignore_tag_prefix_list,
            aggregation_minutes=aggregation_minutes,
            ignore_aggregations=ignore_aggregations,
            keep_error_list=keep_error_list,
            tag_alert_threshold=tag_alert_threshold,
            max_insert_batch_size_bytes=max_insert_batch_size_bytes,
            max_document_size_bytes=max_document_size_bytes,
            max_batch_records=max_batch_records,
            oversized_record_policy=oversized_record_policy,
            table_sharding=table_sharding,
            sort_before_sharding=sort_before_sharding,
            raw_table_name=raw_table_name,
            aggregate_table_name=aggregate_table_name,
            uptime_table_name=uptime_table_name,
            s3_key_prefix=s3_key_prefix,
            kms_key_id=kms_key_id,
            max_write_workers=max_write_workers,
            timeout_guard_threshold_seconds=timeout_guard_threshold_seconds,
            retry_queue_url=retry_queue_url,
            max_requeue_attempts=max_requeue_attempts,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
