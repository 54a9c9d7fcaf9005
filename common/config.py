"""Configuration for PeerSync components.

Defaults come from environment variables so deployments can tune timings
without code changes; the pydantic models validate any explicit overrides.
"""

import os

from pydantic import BaseModel, Field, model_validator

from common.constants import DEFAULT_BIND_HOST, DEFAULT_TRANSFER_PORT, STREAM_CHUNK_SIZE_BYTES


TRANSFER_PORT = int(os.getenv("PEERSYNC_TRANSFER_PORT", str(DEFAULT_TRANSFER_PORT)))
BIND_HOST = os.getenv("PEERSYNC_BIND_HOST", DEFAULT_BIND_HOST)

CONNECT_TIMEOUT = float(os.getenv("PEERSYNC_CONNECT_TIMEOUT", "15"))
RESPONSE_TIMEOUT = float(os.getenv("PEERSYNC_RESPONSE_TIMEOUT", "30"))
CONNECT_MAX_RETRIES = int(os.getenv("PEERSYNC_CONNECT_MAX_RETRIES", "3"))
CONNECT_RETRY_DELAY = float(os.getenv("PEERSYNC_CONNECT_RETRY_DELAY", "2"))

PEER_CONNECTION_TIMEOUT = float(os.getenv("PEERSYNC_PEER_CONNECTION_TIMEOUT", "15"))
MIN_ACTION_INTERVAL = float(os.getenv("PEERSYNC_MIN_ACTION_INTERVAL", "1"))
KEEP_ALIVE_INTERVAL = float(os.getenv("PEERSYNC_KEEP_ALIVE_INTERVAL", "5"))
KEEP_ALIVE_MIN_CHECK_INTERVAL = float(os.getenv("PEERSYNC_KEEP_ALIVE_MIN_CHECK_INTERVAL", "2"))
KEEP_ALIVE_FAILURE_THRESHOLD = int(os.getenv("PEERSYNC_KEEP_ALIVE_FAILURE_THRESHOLD", "3"))
PEER_MAX_CONNECT_RETRIES = int(os.getenv("PEERSYNC_PEER_MAX_CONNECT_RETRIES", "3"))
PEER_RETRY_BASE_DELAY = float(os.getenv("PEERSYNC_PEER_RETRY_BASE_DELAY", "1"))
DISCOVERY_RESTART_DELAY = float(os.getenv("PEERSYNC_DISCOVERY_RESTART_DELAY", "1"))
TEARDOWN_STEP_TIMEOUT = float(os.getenv("PEERSYNC_TEARDOWN_STEP_TIMEOUT", "5"))

MAX_PARALLEL_TRANSFERS = int(os.getenv("PEERSYNC_MAX_PARALLEL_TRANSFERS", "1"))


class TransferConfig(BaseModel):
    """Socket-level settings for the transfer client and server."""

    host: str = BIND_HOST
    port: int = Field(default=TRANSFER_PORT, ge=0, le=65535)
    connect_timeout: float = Field(default=CONNECT_TIMEOUT, gt=0)
    response_timeout: float = Field(default=RESPONSE_TIMEOUT, gt=0)
    max_retries: int = Field(default=CONNECT_MAX_RETRIES, ge=1)
    retry_delay: float = Field(default=CONNECT_RETRY_DELAY, ge=0)
    chunk_size: int = Field(default=STREAM_CHUNK_SIZE_BYTES, gt=0)


class SupervisorConfig(BaseModel):
    """Timing and retry policy of the peer connection state machine."""

    connection_timeout: float = Field(default=PEER_CONNECTION_TIMEOUT, gt=0)
    min_action_interval: float = Field(default=MIN_ACTION_INTERVAL, ge=0)
    keep_alive_interval: float = Field(default=KEEP_ALIVE_INTERVAL, gt=0)
    keep_alive_min_check_interval: float = Field(default=KEEP_ALIVE_MIN_CHECK_INTERVAL, ge=0)
    keep_alive_failure_threshold: int = Field(default=KEEP_ALIVE_FAILURE_THRESHOLD, ge=1)
    max_connect_retries: int = Field(default=PEER_MAX_CONNECT_RETRIES, ge=0)
    retry_base_delay: float = Field(default=PEER_RETRY_BASE_DELAY, ge=0)
    discovery_restart_delay: float = Field(default=DISCOVERY_RESTART_DELAY, ge=0)
    teardown_step_timeout: float = Field(default=TEARDOWN_STEP_TIMEOUT, gt=0)

    @model_validator(mode="after")
    def _check_keep_alive(self) -> "SupervisorConfig":
        if self.keep_alive_min_check_interval > self.keep_alive_interval:
            raise ValueError("keep_alive_min_check_interval must not exceed keep_alive_interval")
        return self


class SyncConfig(BaseModel):
    """Batch policy of the folder synchronizer."""

    max_parallel_transfers: int = Field(default=MAX_PARALLEL_TRANSFERS, ge=1)
