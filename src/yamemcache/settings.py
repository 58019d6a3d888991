DEFAULT_READ_BUFFER_SIZE = 4096

# A response header line (VALUE <key> <flags> <bytes> <cas>, error messages...)
# must fit in this many bytes. Anything longer without a line terminator
# means the stream is not aligned to a response anymore.
DEFAULT_MAX_HEADER_SIZE = 2048

# Protocol limit for keys
MAX_KEY_SIZE = 250

DEFAULT_CONNECTION_TIMEOUT_S = 1.0

# Per operation deadline used by the CacheClient. None disables it.
DEFAULT_OPERATION_TIMEOUT_S = 1.0
