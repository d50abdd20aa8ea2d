from __future__ import annotations

import bz2
import gzip

from pkgrepo.schemas import encode_raw_info
from pkgrepo.storage import CacheStore

RECORD_SEPARATOR = "\n"
SUMMARY_FORMATS = ("gz", "bz2")


def build_summary(store: CacheStore) -> str:
    """Concatenate every fresh record's raw metadata, each followed by a blank line.

    Built from the current store state on every call.
    """
    return "".join(f"{raw_info}{RECORD_SEPARATOR}" for raw_info in store.iter_raw_info())


def compress_summary(summary: str, fmt: str) -> bytes:
    payload = encode_raw_info(summary)
    if fmt == "gz":
        return gzip.compress(payload)
    if fmt == "bz2":
        return bz2.compress(payload)
    raise ValueError(f"unsupported summary format: {fmt}")


def summary_filename(fmt: str) -> str:
    if fmt not in SUMMARY_FORMATS:
        raise ValueError(f"unsupported summary format: {fmt}")
    return f"pkg_summary.{fmt}"
