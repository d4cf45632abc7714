from __future__ import annotations

import pytest

from jarsmith.naming import (
    ARCHIVE_EXTENSION,
    DEFAULT_LOCK_PREFIX,
    DEFAULT_TASKS_QUEUE_PREFIX,
    archive_filename,
    environment_lock_name,
    is_valid_version,
    safe_slug,
    tasks_queue_name,
)


def test_safe_slug_keeps_clean_values() -> None:
    assert safe_slug("billing-service") == "billing-service"
    assert safe_slug("  billing.v2  ") == "billing.v2"


def test_safe_slug_suffixes_lossy_values_with_stable_hash() -> None:
    first = safe_slug("Billing Service")
    second = safe_slug("Billing Service")
    assert first == second
    assert first.startswith("billing-service-")
    # Values that slugify to the same text still get distinct names.
    assert safe_slug("billing service") != first


def test_safe_slug_rejects_empty_and_handles_symbol_only_values() -> None:
    with pytest.raises(ValueError):
        safe_slug("   ")
    assert safe_slug("///").startswith("x-")


@pytest.mark.parametrize("version", ["1.0.0", "2024.01.15-rc1", "7", "1.0+build.5"])
def test_is_valid_version_accepts_common_labels(version: str) -> None:
    assert is_valid_version(version)


@pytest.mark.parametrize("version", ["", "-1", "1.0/../../etc", "has space", ".hidden"])
def test_is_valid_version_rejects_unsafe_labels(version: str) -> None:
    assert not is_valid_version(version)


def test_tasks_queue_name_defaults_and_slugifies() -> None:
    assert tasks_queue_name(None) == DEFAULT_TASKS_QUEUE_PREFIX
    assert tasks_queue_name("") == DEFAULT_TASKS_QUEUE_PREFIX
    assert tasks_queue_name("Team A/Jobs") == "team-a-jobs"


def test_environment_lock_name_is_prefixed() -> None:
    assert environment_lock_name("uat") == f"{DEFAULT_LOCK_PREFIX}.uat"


def test_archive_filename_embeds_version_and_digest_prefix() -> None:
    digest = "ab" * 32
    name = archive_filename("billing", "1.2.3", digest)
    assert name == f"billing-1.2.3-{digest[:12]}{ARCHIVE_EXTENSION}"
    with pytest.raises(ValueError):
        archive_filename("billing", "../1", digest)
