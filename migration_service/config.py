"""
Configuration for the migration service.
"""
import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class ServiceConfig:
    """Tunable settings, loaded from a JSON file."""
    state_file: Optional[Path] = None
    # Remote call retries (tenacity)
    max_attempts: int = 3
    wait_multiplier: float = 1.0
    wait_max: float = 10.0
    # Drive listing and cache
    page_size: int = 100
    cache_stale_after: float = 3600.0
    max_depth: int = 64
    # Operation hub
    heartbeat_interval: float = 30.0
    completed_operation_ttl: Optional[float] = 30.0
    failed_operation_ttl: Optional[float] = 60.0
    subscriber_queue_size: int = 1000
    # Album queue
    discover_albums: bool = True
    enqueue_batch_size: int = 100
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


def load_config(config_file: Optional[Path] = None) -> ServiceConfig:
    """Load configuration from a JSON file.

    Unknown keys are ignored. OAuth client credentials may also come from the
    MIGRATION_CLIENT_ID / MIGRATION_CLIENT_SECRET environment variables.

    Args:
        config_file: Path to config file

    Returns:
        ServiceConfig instance
    """
    values = {}
    if config_file:
        try:
            with open(config_file) as f:
                values = json.load(f)
        except Exception as e:
            logger.error(f"Error loading config file: {e}")
            values = {}

    known = {f.name for f in fields(ServiceConfig)}
    config = ServiceConfig(**{k: v for k, v in values.items() if k in known})
    if config.state_file is not None:
        config.state_file = Path(config.state_file)

    config.client_id = os.environ.get('MIGRATION_CLIENT_ID', config.client_id)
    config.client_secret = os.environ.get('MIGRATION_CLIENT_SECRET', config.client_secret)
    return config
