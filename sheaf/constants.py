# Magic and version
SUPERBLOCK_MAGIC = b"SHEAFAR\x00"  # 8 bytes: "SHEAFAR\0"

VERSION_MAJOR = 1
VERSION_MINOR = 0

# Superblock flags
FLAG_ENCRYPTED = 1 << 0

# KDF identifiers
KDF_NONE = 0
KDF_ARGON2ID = 1


# Record constants
REC_SYNC = bytes([0xD2, 0x53, 0x48, 0x46])  # 0xD2 'S' 'H' 'F'

RTYPE_ENTRY = 0
RTYPE_CHUNK = 1
RTYPE_END = 2

# Record flags
RFLAG_HEADER_EXT = 1 << 0
RFLAG_CHUNK_TAG_PRESENT = 1 << 1


# Entry header kinds as stored on disk
KIND_FILE = 0
KIND_DIRECTORY = 1


DEFAULT_CHUNK_SIZE = 1_048_576  # 1 MiB
MAX_CHUNK_SIZE = 64 * 1_048_576
MAX_ENTRY_HEADER_LEN = 64 * 1024

# Applied to directories created on unpack (subject to umask)
DEFAULT_DIR_MODE = 0o775
# Permission bits reapplied to restored files
FILE_PERM_MASK = 0o777

# Copy granularity when restoring file payloads
COPY_BUFSIZE = 64 * 1024
