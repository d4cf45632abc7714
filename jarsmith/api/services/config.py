from __future__ import annotations

from functools import lru_cache

from jarsmith.core.config_records import ConfigRecordStore


@lru_cache
def get_config_store() -> ConfigRecordStore:
    return ConfigRecordStore()
