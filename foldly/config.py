"""
Configuration settings for the Foldly upload service.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

GIB = 1024 * 1024 * 1024


class AppConfig(BaseSettings):
    """Application configuration settings."""

    application_port: int = Field(default=8000, description="Port on which the application will run")

    # Storage selection
    storage_provider: str = Field(default="supabase", description="Storage backend: 'supabase' or 'gcs'")
    workspace_bucket: str = Field(default="foldly-workspaces", description="Bucket for workspace uploads")
    link_bucket: str = Field(default="foldly-link-uploads", description="Bucket for public link uploads")

    # Supabase Configuration
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_role_key: str = Field(default="", description="Service role key for storage administration")
    supabase_s3_access_key_id: str = Field(default="", description="Access key for the S3-compatible endpoint")
    supabase_s3_secret_access_key: str = Field(default="", description="Secret key for the S3-compatible endpoint")
    supabase_s3_region: str = Field(default="us-east-1", description="Region of the Supabase project")

    # GCS Configuration
    gcs_project_id: str = Field(default="", description="Google Cloud project ID")
    gcs_client_email: str = Field(default="", description="Service account client email")
    gcs_private_key: str = Field(default="", description="Service account private key (PEM or base64 encoded PEM)")
    gcs_upload_origin: str = Field(default="*", description="Origin allowed to use resumable session URLs")

    # Database Configuration
    db_path: str = Field(default="foldly.db", description="Path to SQLite database file")
    spool_dir: str = Field(default="spool", description="Directory holding received files until they are stored")

    # Upload policy
    max_file_size: int = Field(default=5 * GIB, description="Upper bound on a single file in bytes")
    parallel_uploads: int = Field(default=3, description="Maximum in-flight transfers per batch")
    upload_retry_attempts: int = Field(default=3, description="Number of retry attempts for a failed upload")
    retry_delays: List[float] = Field(
        default=[1, 2, 4, 8, 10], description="Seconds to wait before each retry; the last value repeats"
    )
    near_limit_threshold: float = Field(default=80, description="Usage percentage that triggers a quota warning")
    default_storage_limit: int = Field(default=50 * GIB, description="Storage allotment for users without a plan")
    signed_url_expiry: int = Field(default=3600, description="Default lifetime of signed read URLs in seconds")

    # Finished upload tracking
    cleanup_interval: float = Field(
        default=300, description="Seconds between sweeps of finished batches; 0 disables the sweep"
    )
    completed_retention: float = Field(
        default=3600, description="Seconds a finished batch stays queryable before a sweep drops it"
    )

    # Reconciliation
    reconcile_interval: int = Field(
        default=0, description="Seconds between orphaned-object scans; 0 disables the periodic scan"
    )

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
    )


# Create global config instance
config = AppConfig()
