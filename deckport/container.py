"""
Unpack and pack the ZIP container of an Anki package.

Collection entries, in the order they are preferred on read:

- ``collection.anki21b``: Anki 2.1.50+ (zstd-compressed SQLite)
- ``collection.anki21``: Anki 2.1 (plain SQLite)
- ``collection.anki2``: Anki 2.0 (plain SQLite)

Packages are written with a single ``collection.anki21b`` entry. The
payload is stored raw unless compression is requested, so the reader
sniffs the zstd frame magic instead of trusting the entry name alone.
"""

import io
import json
import logging
import zipfile
import zlib

import zstandard

from deckport.errors import ContainerError

logger = logging.getLogger(__name__)

COLLECTION_ANKI21B = "collection.anki21b"
COLLECTION_ANKI21 = "collection.anki21"
COLLECTION_ANKI2 = "collection.anki2"
COLLECTION_ENTRIES = (COLLECTION_ANKI21B, COLLECTION_ANKI21, COLLECTION_ANKI2)
COMPRESSED_SUFFIX = ".anki21b"
MEDIA_ENTRY = "media"

# Zstd magic: 0x28 0xB5 0x2F 0xFD (little-endian 0xFD2FB528)
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


def unpack(data: bytes) -> dict[str, bytes]:
    """
    Read every entry of a ZIP archive.

    :param data: Raw archive bytes.
    :returns: Dict mapping entry name to its (still compressed) payload.
    :raises ContainerError: If the bytes are not a readable ZIP archive.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(data), "r") as zip_ref:
            return {
                info.filename: zip_ref.read(info)
                for info in zip_ref.infolist()
                if not info.is_dir()
            }
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError) as e:
        raise ContainerError(f"Not a valid APKG archive: {e}") from e
    except (NotImplementedError, RuntimeError) as e:
        # Unsupported compression method or encrypted entry
        raise ContainerError(f"Cannot read APKG archive: {e}") from e


def select_collection(entries: dict[str, bytes]) -> str:
    """
    Pick the collection entry to read.

    :param entries: Output of :func:`unpack`.
    :returns: Name of the preferred non-empty collection entry.
    :raises ContainerError: If no collection entry is present.
    """
    for name in COLLECTION_ENTRIES:
        if entries.get(name):
            return name
    raise ContainerError(
        "No collection file found in APKG "
        f"(expected one of: {', '.join(COLLECTION_ENTRIES)})"
    )


def decompress(payload: bytes) -> bytes:
    """
    Reverse zstd compression of a collection payload.

    Payloads without the zstd frame magic are returned unchanged.

    :raises ContainerError: If a zstd frame is present but corrupt.
    """
    if payload[:4] != ZSTD_MAGIC:
        logger.debug("Payload has no zstd frame, reading it as stored")
        return payload

    dctx = zstandard.ZstdDecompressor()
    try:
        # Use stream_reader because content size may not be in frame header
        with dctx.stream_reader(io.BytesIO(payload)) as reader:
            return reader.read()
    except zstandard.ZstdError as e:
        raise ContainerError(f"Could not decompress collection: {e}") from e


def compress(payload: bytes) -> bytes:
    cctx = zstandard.ZstdCompressor()
    return cctx.compress(payload)


def read_collection(data: bytes) -> tuple[str, bytes]:
    """
    Extract the embedded collection database from package bytes.

    :param data: Raw ``.apkg`` bytes.
    :returns: Tuple of (entry name, SQLite database bytes).
    :raises ContainerError: If the archive is invalid or has no collection.
    """
    entries = unpack(data)
    name = select_collection(entries)
    payload = entries[name]
    logger.info("Reading %s (%d bytes)", name, len(payload))

    if name.endswith(COMPRESSED_SUFFIX):
        payload = decompress(payload)
    return name, payload


def pack(entries: dict[str, bytes]) -> bytes:
    """
    Write entries into a new ZIP archive.

    :param entries: Dict mapping entry name to payload.
    :returns: Archive bytes.
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zip_ref:
        for name, payload in entries.items():
            zip_ref.writestr(name, payload)
    return buffer.getvalue()


def pack_collection(payload: bytes, compress_payload: bool = False) -> bytes:
    """
    Package a collection database as ``.apkg`` bytes.

    :param payload: SQLite database bytes.
    :param compress_payload: If True, zstd-compress the payload. Off by
        default: the entry is stored raw under the anki21b name.
    :returns: Archive bytes with the collection and an empty media map.
    """
    if compress_payload:
        payload = compress(payload)
    return pack(
        {
            COLLECTION_ANKI21B: payload,
            MEDIA_ENTRY: json.dumps({}).encode("utf-8"),
        }
    )
