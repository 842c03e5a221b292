# Magic and versions
CONTAINER_MAGIC = b"FVLT"   # 4 bytes, start of every encrypted container
PACK_MAGIC = b"FVPK"        # 4 bytes, start of every packed stream

PACK_STREAM_VERSION = 1

# Envelope format versions (not binary compatible with each other)
ENVELOPE_V1 = 1  # PBKDF2-HMAC-SHA256 + AES-256-CTR + HMAC-SHA256
ENVELOPE_V2 = 2  # Argon2id + XChaCha20-Poly1305
SUPPORTED_ENVELOPE_VERSIONS = (ENVELOPE_V1, ENVELOPE_V2)
DEFAULT_ENVELOPE_VERSION = ENVELOPE_V2

SALT_SIZE = 16
KEY_SIZE = 32  # 256-bit symmetric keys only

# Version 1 parameters
V1_IV_SIZE = 16
V1_TAG_SIZE = 32
V1_PBKDF2_ITERATIONS = 200_000

# Version 2 parameters
V2_NONCE_SIZE = 24
V2_TAG_SIZE = 16
V2_ARGON_TIME_COST = 3
V2_ARGON_MEMORY_COST_KIB = 64 * 1024  # 64 MiB
V2_ARGON_PARALLELISM = 4


# Codec IDs for the packed stream (0=none, 1=deflate/zlib)
CODEC_NONE = 0
CODEC_DEFLATE = 1
CODEC_NAMES = {"none": CODEC_NONE, "deflate": CODEC_DEFLATE}
DEFAULT_CODEC_ID = CODEC_DEFLATE
DEFLATE_LEVEL = 6


CHUNK_SIZE = 64 * 1024  # streaming buffer for packing, encryption and restore

MAX_PATH_BYTES = 0xFFFF


# Exclusion names (matched exactly against basenames)
TRASH_NAMES = frozenset({"$RECYCLE.BIN", "RECYCLER", ".Trash", ".Trashes"})
VOLUME_METADATA_NAMES = frozenset({"System Volume Information", ".Spotlight-V100", ".fseventsd"})

TEMP_ARCHIVE_SUFFIX = ".fvpack"
