"""
Compression selection for tar archive members.

Supports:
- zstd: tar --zstd (.tar.zst)
- xz: tar -J (.tar.xz)
- bzip2: tar -j (.tar.bz2)
- gzip: tar -z (.tar.gz)
- none: plain tar (.tar)

In 'auto' mode the first available compressor in preference order is used.
"""

import os
import shutil
import logging
from collections import namedtuple
from typing import Callable, Optional

logger = logging.getLogger(__name__)


Compressor = namedtuple('Compressor', ['name', 'tar_args', 'suffix'])

COMPRESSORS = {
    'zstd': Compressor('zstd', ('--zstd',), '.tar.zst'),
    'xz': Compressor('xz', ('-J',), '.tar.xz'),
    'bzip2': Compressor('bzip2', ('-j',), '.tar.bz2'),
    'gzip': Compressor('gzip', ('-z',), '.tar.gz'),
    'none': Compressor('none', (), '.tar'),
}

ALIASES = {
    'zst': 'zstd',
    'bz2': 'bzip2',
    'gz': 'gzip',
    'tar': 'none',
}

# fast-modern -> widely-compatible -> universal -> none
AUTO_PREFERENCE = ('zstd', 'bzip2', 'gzip')

# Fallback when an explicit scheme is not recognized
DEFAULT_COMPRESSOR = 'gzip'

# Longest suffix first so .tar.gz wins over .tar
ARCHIVE_SUFFIXES = sorted((c.suffix for c in COMPRESSORS.values()), key=len, reverse=True)


def select_compressor(mode: str = 'auto', which: Callable = shutil.which) -> Compressor:
    """
    Choose the compression scheme for archive members.

    Args:
        mode: 'auto' or an explicit scheme name
        which: Tool lookup used when probing (shutil.which)

    Returns:
        Compressor with tar arguments and filename suffix
    """
    mode = (mode or 'auto').lower()

    if mode == 'auto':
        for name in AUTO_PREFERENCE:
            if which(name) is not None:
                logger.info(f"Compression auto-selected: {name}")
                return COMPRESSORS[name]
        logger.warning("No compressor found, archives will be uncompressed")
        return COMPRESSORS['none']

    name = ALIASES.get(mode, mode)
    if name not in COMPRESSORS:
        logger.warning(
            f"Unknown compression scheme '{mode}', falling back to {DEFAULT_COMPRESSOR}. "
            f"Valid options: {['auto'] + list(COMPRESSORS.keys())}"
        )
        return COMPRESSORS[DEFAULT_COMPRESSOR]

    return COMPRESSORS[name]


def is_archive_member(filename: str) -> bool:
    """Check whether a filename carries one of the archive suffixes."""
    return any(filename.endswith(suffix) for suffix in ARCHIVE_SUFFIXES)


def compressor_for_member(filename: str) -> Optional[Compressor]:
    """
    Map an archive member's suffix back to its compressor.

    Args:
        filename: Archive member filename

    Returns:
        Compressor, or None if the name is not an archive member
    """
    for compressor in sorted(COMPRESSORS.values(), key=lambda c: len(c.suffix), reverse=True):
        if filename.endswith(compressor.suffix):
            return compressor
    return None


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.zst

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    for suffix in ARCHIVE_SUFFIXES:
        if filename.endswith(suffix):
            return filename[:-len(suffix)]
    return os.path.splitext(filename)[0]


def member_filename(entry_name: str, compressor: Compressor) -> str:
    """
    Archive member filename for a top-level entry.

    Hidden entries keep their dot so '/.snapshots' becomes '.snapshots.tar.gz'.
    """
    return f"{entry_name}{compressor.suffix}"
