"""
Configuration management for the zip archiver.

All configuration is done via environment variables - no config files inside
functions or containers. This module provides typed configuration classes
with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Bucket, table and topics MUST be set explicitly in deployments
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep the existing environment variable names (BUCKET_NAME,
      DYNAMODB_TABLE_NAME, SNS_TOPIC_*) working, deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

# S3 rejects multipart parts below this size (except the last one)
MIN_UPLOAD_PART_SIZE = 5 * 1024 * 1024


class ChannelBackend(Enum):
    """Supported message channel backends."""

    SNS = "sns"
    KAFKA = "kafka"


def _default_region() -> str:
    return os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1"))


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for source objects and archives.

    Attributes:
        bucket: S3 bucket holding both source objects and archives
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO/LocalStack)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("BUCKET_NAME", os.getenv("S3_BUCKET", "")),
            region=os.getenv("S3_REGION", _default_region()),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class DynamoDbConfig:
    """DynamoDB counter store configuration.

    Attributes:
        table_name: Table holding one record per run
        region: AWS region
        endpoint_url: Custom endpoint URL (for DynamoDB Local/LocalStack)
        record_ttl_seconds: Lifetime of a run record if never deleted
    """

    table_name: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None
    record_ttl_seconds: int = 15 * 60

    @classmethod
    def from_env(cls) -> DynamoDbConfig:
        """Load configuration from environment variables."""
        return cls(
            table_name=os.getenv("DYNAMODB_TABLE_NAME", ""),
            region=os.getenv("DYNAMODB_REGION", _default_region()),
            endpoint_url=os.getenv("DYNAMODB_ENDPOINT"),
            record_ttl_seconds=int(os.getenv("RUN_RECORD_TTL_SECONDS", str(15 * 60))),
        )


@dataclass(frozen=True)
class SnsConfig:
    """SNS message channel configuration.

    Attributes:
        create_job_topic_arn: Topic receiving one BatchMessage per batch
        job_finished_topic_arn: Topic receiving the ZipArchiveRequest
        region: AWS region
        endpoint_url: Custom endpoint URL (for LocalStack)
    """

    create_job_topic_arn: str = ""
    job_finished_topic_arn: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None

    @classmethod
    def from_env(cls) -> SnsConfig:
        """Load configuration from environment variables."""
        return cls(
            create_job_topic_arn=os.getenv("SNS_TOPIC_CREATE_JOB_ARN", ""),
            job_finished_topic_arn=os.getenv("SNS_TOPIC_CHILD_JOB_FINISHED_ARN", ""),
            region=os.getenv("SNS_REGION", _default_region()),
            endpoint_url=os.getenv("SNS_ENDPOINT"),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda message channel configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        batch_topic: Topic carrying BatchMessages
        finished_topic: Topic carrying ZipArchiveRequests
        consumer_group: Consumer group prefix for the consumer service
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level ('all' for strongest durability)
    """

    brokers: str = "localhost:9092"
    batch_topic: str = "zip-archiver-batches"
    finished_topic: str = "zip-archiver-finished"
    consumer_group: str = "zip-archiver"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    acks: str = "all"

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            batch_topic=os.getenv("KAFKA_BATCH_TOPIC", "zip-archiver-batches"),
            finished_topic=os.getenv("KAFKA_FINISHED_TOPIC", "zip-archiver-finished"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "zip-archiver"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
        )


@dataclass(frozen=True)
class JobConfig:
    """Job splitting configuration.

    Attributes:
        source_prefix: Key prefix enumerated by the splitter
        batch_size: Maximum object keys per batch (one interim archive each)
        list_page_size: Keys requested per listing page
        allowed_extensions: Lower-case key suffixes that are archived
    """

    source_prefix: str = "images/"
    batch_size: int = 10
    list_page_size: int = 1000
    allowed_extensions: tuple[str, ...] = (".jpg", ".jpeg", ".png")

    @classmethod
    def from_env(cls) -> JobConfig:
        """Load configuration from environment variables."""
        raw_extensions = os.getenv("ALLOWED_EXTENSIONS", ".jpg,.jpeg,.png")
        extensions = tuple(
            ext.strip().lower() if ext.strip().startswith(".") else f".{ext.strip().lower()}"
            for ext in raw_extensions.split(",")
            if ext.strip()
        )
        return cls(
            source_prefix=os.getenv("SOURCE_PREFIX", "images/"),
            batch_size=int(os.getenv("BATCH_SIZE", "10")),
            list_page_size=int(os.getenv("LIST_PAGE_SIZE", "1000")),
            allowed_extensions=extensions,
        )


@dataclass(frozen=True)
class TransferConfig:
    """Streaming transfer configuration.

    Attributes:
        buffer_bytes: Upper bound of bytes buffered between producer and consumer
        read_chunk_bytes: Size of each read from a source object
        upload_part_size_bytes: Multipart upload part size
        compression: Archive entry method ("stored" or "deflated")
    """

    buffer_bytes: int = 1024 * 1024  # 1MB
    read_chunk_bytes: int = 64 * 1024  # 64KB
    upload_part_size_bytes: int = 8 * 1024 * 1024  # 8MB
    compression: str = "stored"

    @classmethod
    def from_env(cls) -> TransferConfig:
        """Load configuration from environment variables."""
        return cls(
            buffer_bytes=int(os.getenv("TRANSFER_BUFFER_BYTES", str(1024 * 1024))),
            read_chunk_bytes=int(os.getenv("TRANSFER_READ_CHUNK_BYTES", str(64 * 1024))),
            upload_part_size_bytes=int(
                os.getenv("UPLOAD_PART_SIZE_BYTES", str(8 * 1024 * 1024))
            ),
            compression=os.getenv("ARCHIVE_COMPRESSION", "stored").lower(),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServiceConfig:
    """Complete archiver configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        channel_backend: Which message channel backend to use
        s3: S3 configuration
        dynamodb: Counter store configuration
        sns: SNS configuration (if channel_backend is SNS)
        kafka: Kafka configuration (if channel_backend is KAFKA)
        job: Job splitting configuration
        transfer: Streaming transfer configuration
        observability: Logging configuration
    """

    channel_backend: ChannelBackend = ChannelBackend.SNS
    s3: S3Config = field(default_factory=S3Config)
    dynamodb: DynamoDbConfig = field(default_factory=DynamoDbConfig)
    sns: SnsConfig = field(default_factory=SnsConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    job: JobConfig = field(default_factory=JobConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServiceConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("CHANNEL_BACKEND", "sns").lower()
        try:
            channel_backend = ChannelBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid CHANNEL_BACKEND '{backend_str}'. Must be one of: sns, kafka")

        config = cls(
            channel_backend=channel_backend,
            s3=S3Config.from_env(),
            dynamodb=DynamoDbConfig.from_env(),
            sns=SnsConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            job=JobConfig.from_env(),
            transfer=TransferConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    @property
    def batch_topic(self) -> str:
        """Topic (or topic ARN) that carries BatchMessages."""
        if self.channel_backend == ChannelBackend.KAFKA:
            return self.kafka.batch_topic
        return self.sns.create_job_topic_arn

    @property
    def finished_topic(self) -> str:
        """Topic (or topic ARN) that carries ZipArchiveRequests."""
        if self.channel_backend == ChannelBackend.KAFKA:
            return self.kafka.finished_topic
        return self.sns.job_finished_topic_arn

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.s3.bucket:
            raise ValueError("BUCKET_NAME is required")
        if not self.dynamodb.table_name:
            raise ValueError("DYNAMODB_TABLE_NAME is required")
        if self.dynamodb.record_ttl_seconds < 1:
            raise ValueError("RUN_RECORD_TTL_SECONDS must be >= 1")

        if self.channel_backend == ChannelBackend.SNS:
            if not self.sns.create_job_topic_arn:
                raise ValueError("SNS_TOPIC_CREATE_JOB_ARN is required when CHANNEL_BACKEND=sns")
            if not self.sns.job_finished_topic_arn:
                raise ValueError(
                    "SNS_TOPIC_CHILD_JOB_FINISHED_ARN is required when CHANNEL_BACKEND=sns"
                )
        elif self.channel_backend == ChannelBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when CHANNEL_BACKEND=kafka")
            if not self.kafka.batch_topic or not self.kafka.finished_topic:
                raise ValueError(
                    "KAFKA_BATCH_TOPIC and KAFKA_FINISHED_TOPIC are required "
                    "when CHANNEL_BACKEND=kafka"
                )

        if self.job.batch_size < 1:
            raise ValueError("BATCH_SIZE must be >= 1")
        if self.job.list_page_size < 1:
            raise ValueError("LIST_PAGE_SIZE must be >= 1")
        if not self.job.allowed_extensions:
            raise ValueError("ALLOWED_EXTENSIONS must name at least one extension")

        if self.transfer.buffer_bytes < 1:
            raise ValueError("TRANSFER_BUFFER_BYTES must be >= 1")
        if self.transfer.read_chunk_bytes < 1:
            raise ValueError("TRANSFER_READ_CHUNK_BYTES must be >= 1")
        if self.transfer.upload_part_size_bytes < MIN_UPLOAD_PART_SIZE:
            raise ValueError(
                f"UPLOAD_PART_SIZE_BYTES must be >= {MIN_UPLOAD_PART_SIZE} (S3 minimum part size)"
            )
        if self.transfer.compression not in ("stored", "deflated"):
            raise ValueError(
                f"Invalid ARCHIVE_COMPRESSION '{self.transfer.compression}'. "
                "Must be one of: stored, deflated"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Archiver configuration loaded",
            extra={
                "channel_backend": self.channel_backend.value,
                "s3_bucket": self.s3.bucket,
                "s3_endpoint": self.s3.endpoint_url or "AWS",
                "dynamodb_table": self.dynamodb.table_name,
                "record_ttl_seconds": self.dynamodb.record_ttl_seconds,
                "batch_topic": self.batch_topic,
                "finished_topic": self.finished_topic,
                "source_prefix": self.job.source_prefix,
                "batch_size": self.job.batch_size,
                "allowed_extensions": ",".join(self.job.allowed_extensions),
                "transfer_buffer_bytes": self.transfer.buffer_bytes,
                "upload_part_size_bytes": self.transfer.upload_part_size_bytes,
                "log_level": self.observability.log_level,
            },
        )
