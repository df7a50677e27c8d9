"""Unit tests for configuration loading and CLI helpers in cloudflare_dynamic_dns.cli.

Tests cover:
- YAML settings file loading (load_file_config)
- Environment precedence and value parsing (load_settings)
- Required credential checks (validate_config)
- Kubernetes client configuration fallback (load_kube_config)
- Re-queueing after a public IP change (enqueue_all)
"""

import logging
from pathlib import Path
from unittest.mock import patch

import pytest
from kubernetes.config import ConfigException

from cloudflare_dynamic_dns.cli import (
    ConfigError,
    Settings,
    _parse_bool,
    enqueue_all,
    load_file_config,
    load_kube_config,
    load_settings,
    validate_config,
)
from cloudflare_dynamic_dns.controller import DEFAULT_ANNOTATION_DOMAIN
from cloudflare_dynamic_dns.resources import ResourceCache, ResourceKind, WatchedResource
from cloudflare_dynamic_dns.workqueue import RateLimitingQueue

CREDENTIALS = {
    "CF_AUTH_EMAIL": "ops@example.com",
    "CF_AUTH_TOKEN": "secret",
    "CF_ZONE_ID": "zone123",
}


def write_config(tmp_path: Path, content: str) -> str:
    path = tmp_path / "cloudflare-dynamic-dns.yaml"
    path.write_text(content)
    return str(path)


# =============================================================================
# Settings File
# =============================================================================


def test_load_file_config_missing_file(tmp_path: Path) -> None:
    """A missing file yields an empty mapping."""
    assert load_file_config(str(tmp_path / "absent.yaml")) == {}
    assert load_file_config("") == {}


def test_load_file_config_reads_mapping(tmp_path: Path) -> None:
    path = write_config(tmp_path, "threadiness: 3\nwatch_namespace: web\n")

    assert load_file_config(path) == {"threadiness": 3, "watch_namespace": "web"}


def test_load_file_config_empty_file(tmp_path: Path) -> None:
    assert load_file_config(write_config(tmp_path, "")) == {}


def test_load_file_config_invalid_yaml_is_ignored(tmp_path: Path, caplog) -> None:
    path = write_config(tmp_path, "threadiness: [unclosed\n")

    with caplog.at_level(logging.WARNING):
        assert load_file_config(path) == {}

    assert "Failed to load config file" in caplog.text


def test_load_file_config_non_mapping_is_ignored(tmp_path: Path) -> None:
    assert load_file_config(write_config(tmp_path, "- a\n- b\n")) == {}


# =============================================================================
# Settings
# =============================================================================


def test_load_settings_defaults(tmp_path: Path) -> None:
    """Only credentials set: everything else has its default."""
    env = {**CREDENTIALS, "CONFIG_PATH": str(tmp_path / "absent.yaml")}

    settings = load_settings(env)

    assert settings == Settings(
        cf_auth_email="ops@example.com", cf_auth_token="secret", cf_zone_id="zone123"
    )
    assert settings.annotation_domain == DEFAULT_ANNOTATION_DOMAIN
    assert settings.threadiness == 1
    assert settings.max_retries == 5
    assert settings.record_ttl == 1
    assert settings.strict_cleanup is False


def test_load_settings_reads_yaml(tmp_path: Path) -> None:
    path = write_config(
        tmp_path,
        "threadiness: 4\n"
        "watch_namespace: shop\n"
        "resync_period_seconds: 60\n"
        "strict_cleanup: true\n"
        "annotation_domain: dns.example.org/\n",
    )

    settings = load_settings({**CREDENTIALS, "CONFIG_PATH": path})

    assert settings.threadiness == 4
    assert settings.watch_namespace == "shop"
    assert settings.resync_period_seconds == 60
    assert settings.strict_cleanup is True
    assert settings.annotation_domain == "dns.example.org"


def test_load_settings_env_overrides_yaml(tmp_path: Path) -> None:
    path = write_config(tmp_path, "threadiness: 4\nwatch_namespace: shop\n")
    env = {
        **CREDENTIALS,
        "CONFIG_PATH": path,
        "THREADINESS": "2",
        "WATCH_NAMESPACE": "web",
        "HTTP_TIMEOUT_SECONDS": "2.5",
    }

    settings = load_settings(env)

    assert settings.threadiness == 2
    assert settings.watch_namespace == "web"
    assert settings.http_timeout_seconds == 2.5


def test_load_settings_blank_env_falls_back_to_yaml(tmp_path: Path) -> None:
    path = write_config(tmp_path, "max_retries: 8\n")

    settings = load_settings({**CREDENTIALS, "CONFIG_PATH": path, "MAX_RETRIES": "  "})

    assert settings.max_retries == 8


@pytest.mark.parametrize(
    "name,value",
    [
        ("THREADINESS", "many"),
        ("THREADINESS", "0"),
        ("MAX_RETRIES", "-1"),
        ("RECORD_TTL", "0"),
        ("RESYNC_PERIOD_SECONDS", "1.5"),
        ("HTTP_TIMEOUT_SECONDS", "0"),
        ("HTTP_TIMEOUT_SECONDS", "soon"),
    ],
)
def test_load_settings_rejects_bad_numbers(tmp_path: Path, name: str, value: str) -> None:
    env = {**CREDENTIALS, "CONFIG_PATH": str(tmp_path / "absent.yaml"), name: value}

    with pytest.raises(ConfigError) as exc_info:
        load_settings(env)

    assert name in str(exc_info.value)


@pytest.mark.parametrize("value,expected", [("true", True), ("1", True), ("on", True),
                                            ("false", False), ("no", False), ("", False)])
def test_parse_bool(value: str, expected: bool) -> None:
    assert _parse_bool(value) is expected


def test_parse_bool_default() -> None:
    assert _parse_bool(None, default=True) is True
    assert _parse_bool(False, default=True) is False


# =============================================================================
# Validation
# =============================================================================


def test_validate_config_accepts_credentials() -> None:
    assert validate_config(Settings(**{k.lower(): v for k, v in CREDENTIALS.items()})) is True


def test_validate_config_reports_missing_credentials(caplog) -> None:
    with caplog.at_level(logging.ERROR):
        assert validate_config(Settings(cf_auth_email="ops@example.com")) is False

    assert "CF_AUTH_TOKEN is required" in caplog.text
    assert "CF_ZONE_ID is required" in caplog.text
    assert "CF_AUTH_EMAIL is required" not in caplog.text


def test_validate_config_rejects_empty_annotation_domain() -> None:
    settings = Settings(
        cf_auth_email="ops@example.com", cf_auth_token="secret", cf_zone_id="zone123",
        annotation_domain="",
    )

    assert validate_config(settings) is False


# =============================================================================
# Runtime Helpers
# =============================================================================


def test_load_kube_config_prefers_in_cluster() -> None:
    with patch("cloudflare_dynamic_dns.cli.kube_config.load_incluster_config") as incluster, \
            patch("cloudflare_dynamic_dns.cli.kube_config.load_kube_config") as kubeconfig:
        load_kube_config("/tmp/kubeconfig")

    incluster.assert_called_once_with()
    kubeconfig.assert_not_called()


def test_load_kube_config_falls_back_to_file() -> None:
    with patch(
        "cloudflare_dynamic_dns.cli.kube_config.load_incluster_config",
        side_effect=ConfigException("not in cluster"),
    ), patch("cloudflare_dynamic_dns.cli.kube_config.load_kube_config") as kubeconfig:
        load_kube_config("/tmp/kubeconfig")

    kubeconfig.assert_called_once_with(config_file="/tmp/kubeconfig")


def test_enqueue_all_queues_every_cached_key() -> None:
    cache = ResourceCache()
    cache.upsert(WatchedResource(kind=ResourceKind.SERVICE, namespace="default", name="web"))
    cache.upsert(WatchedResource(kind=ResourceKind.INGRESS, namespace="shop", name="front"))
    queue = RateLimitingQueue()

    enqueue_all(cache, queue)

    keys = []
    while len(queue):
        item, _ = queue.get()
        keys.append(item)
        queue.done(item)
    assert sorted(keys) == ["ingress/shop/front", "service/default/web"]
