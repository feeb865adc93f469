"""kubemitm settings configuration.

Uses Pydantic Settings for type-safe configuration management
with support for environment variables and .env files. The resolved
settings object is frozen and handed to every component explicitly.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kubemitm.version import __version__


class KubernetesSettings(BaseSettings):
    """Kubernetes control-plane access configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KUBEMITM_K8S_",
        extra="ignore",
        frozen=True,
    )

    kubeconfig_path: str | None = Field(
        default=None,
        description="Path to kubeconfig file (default: ~/.kube/config)",
    )
    api_timeout: int = Field(
        default=30,
        ge=1,
        description="Per-request timeout for Kubernetes API calls in seconds",
    )
    max_retries: int = Field(
        default=4,
        ge=1,
        description="Attempts per control-plane call before giving up on transient errors",
    )
    retry_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay for exponential backoff between retries in seconds",
    )


class IdentitySettings(BaseSettings):
    """Cloud IAM identity configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KUBEMITM_IDENTITY_",
        extra="ignore",
        frozen=True,
    )

    service_account_name: str = Field(
        default="mitmproxy-service-account",
        description="IAM service account (and Kubernetes ServiceAccount) name",
    )
    display_name: str = Field(
        default="Service Account for Mitmproxy",
        description="IAM service account display name",
    )
    project_roles: list[str] = Field(
        default_factory=lambda: ["roles/container.admin"],
        description="Project-scope roles granted to the service account",
    )
    max_retries: int = Field(
        default=6,
        ge=1,
        description="Attempts per gcloud IAM call before giving up on transient errors",
    )
    retry_base_delay: float = Field(
        default=2.0,
        ge=0.0,
        description="Base delay for exponential backoff between IAM retries in seconds",
    )

    @field_validator("project_roles", mode="after")
    @classmethod
    def validate_project_roles(cls, v: list[str]) -> list[str]:
        """Require at least one role so the proxy identity is usable."""
        roles = [role.strip() for role in v if role.strip()]
        if not roles:
            msg = "project_roles must contain at least one role"
            raise ValueError(msg)
        return roles


class ProxySettings(BaseSettings):
    """Interception proxy and trusting workload configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KUBEMITM_PROXY_",
        extra="ignore",
        frozen=True,
    )

    namespace: str = Field(default="mitmproxy", description="Target namespace")
    app_label: str = Field(default="mitmproxy", description="Value of the app= label")
    deployment_name: str = Field(default="mitmproxy")
    service_name: str = Field(default="mitmproxy-svc")
    port: int = Field(default=8080, ge=1, le=65535)
    image: str = Field(default="mitmproxy/mitmproxy:latest")
    ca_cert_path: str = Field(
        default="/home/mitmproxy/.mitmproxy/mitmproxy-ca-cert.pem",
        description="CA certificate path inside the proxy container",
    )
    secret_name: str = Field(default="mitmproxysecret")
    secret_key: str = Field(default="mitmproxy-ca.pem")
    client_name: str = Field(default="mitmproxy-client")
    client_image: str = Field(default="ubuntu:22.04")
    ready_timeout_seconds: int = Field(
        default=300,
        ge=1,
        description="How long to wait for the proxy Deployment to become available",
    )
    trust_timeout_seconds: int = Field(
        default=180,
        ge=1,
        description="How long to keep retrying CA extraction from the proxy pod",
    )
    trust_poll_interval: float = Field(
        default=2.0,
        gt=0.0,
        description="Initial delay between CA extraction attempts in seconds",
    )
    ca_output_path: str = Field(
        default="mitmproxy-ca.pem",
        description="Local file the extracted CA certificate is written to",
    )
    fetch_credentials: bool = Field(
        default=True,
        description="Run 'gcloud container clusters get-credentials' before provisioning",
    )


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KUBEMITM_OBSERVABILITY_",
        extra="ignore",
        frozen=True,
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    metrics_textfile: str | None = Field(
        default=None,
        description="Write Prometheus metrics to this file after a run (textfile collector)",
    )


class Settings(BaseSettings):
    """Main kubemitm configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KUBEMITM_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    version: str = Field(default=__version__)

    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    identity: IdentitySettings = Field(default_factory=IdentitySettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are read once at startup and passed to components explicitly;
    nothing below the CLI should call this.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()


def reload_settings() -> Settings:
    """Force reload settings (clears cache).

    Returns:
        Settings: Fresh settings instance.
    """
    get_settings.cache_clear()
    return get_settings()
