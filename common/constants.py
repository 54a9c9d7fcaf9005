"""Project-wide constants (default port, stream piece size, protocol tokens)."""

DEFAULT_TRANSFER_PORT: int = 8988
DEFAULT_BIND_HOST: str = "0.0.0.0"

STREAM_CHUNK_SIZE_BYTES: int = 8 * 1024  # 8 KiB pieces on the wire
PROGRESS_LOG_INTERVAL_SECONDS: float = 1.0
STREAM_LINE_LIMIT_BYTES: int = 16 * 1024 * 1024  # listings travel as one JSON line

MAX_NAME_BYTES: int = 0xFFFF  # 2-byte length prefix

CMD_GET_FILE_LIST = "GET_FILE_LIST"
CMD_GET_FILE_PREFIX = "GET_FILE:"
CMD_UPLOAD_FILE = "UPLOAD_FILE"
CMD_READY_FOR_SERVER_TRANSFERS = "READY_FOR_SERVER_TRANSFERS"
SERVER_FILE_PREFIX = "SERVER_FILE:"

RESP_OK = "OK"
RESP_READY = "READY"
RESP_SUCCESS = "SUCCESS"
RESP_FAILED = "FAILED"
RESP_ERROR_PREFIX = "ERROR:"

ERR_UNKNOWN_COMMAND = "Unknown command"
ERR_FILE_NOT_FOUND = "File not found"

TEMP_FILE_PREFIX = ".peersync-"
TEMP_FILE_SUFFIX = ".partial"