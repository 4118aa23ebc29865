"""
Integrity manifests and verification.

Each generation carries a SHA256SUMS.txt written once at backup time in
sha256sum format, so it can also be checked by hand with
``sha256sum -c SHA256SUMS.txt``. Verification compares digests against that
manifest and writes a verify.log transcript in the same format sha256sum -c
produces.
"""

import random
import hashlib
import logging
from collections import namedtuple
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from hostkeep.errors import QuickVerifyFailed, VerifyFailed
from .compression import is_archive_member

logger = logging.getLogger(__name__)


MANIFEST_FILE = 'SHA256SUMS.txt'
VERIFY_LOG = 'verify.log'

VERIFY_MODES = ('none', 'quick', 'full')
QUICK_SAMPLE_SIZE = 5

FAILURE_MARKER = 'FAILED'

CHUNK_SIZE = 1024 * 1024

VerificationResult = namedtuple('VerificationResult', ['mode', 'checked', 'failures'])


def file_digest(path) -> str:
    """Stream a file through SHA-256 and return the hex digest."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def archive_members(generation) -> List[str]:
    """Archive member filenames of a generation in stable sorted order."""
    generation = Path(generation)
    return sorted(
        entry.name for entry in generation.iterdir()
        if entry.is_file() and is_archive_member(entry.name)
    )


def create_checksums(generation) -> Path:
    """
    Compute digests for every archive member and write the manifest.

    Args:
        generation: Generation directory

    Returns:
        Path of the manifest
    """
    generation = Path(generation)
    lines = []

    for name in archive_members(generation):
        lines.append(f"{file_digest(generation / name)}  {name}")

    manifest = generation / MANIFEST_FILE
    tmp = manifest.with_name(MANIFEST_FILE + '.tmp')
    tmp.write_text(''.join(line + '\n' for line in lines))
    tmp.replace(manifest)

    logger.info(f"Wrote {len(lines)} checksums to {manifest}")
    return manifest


def read_manifest(generation) -> Dict[str, str]:
    """
    Parse a generation's manifest.

    Returns:
        Ordered mapping of member name to hex digest
    """
    manifest = Path(generation) / MANIFEST_FILE
    entries = {}

    for line in manifest.read_text().splitlines():
        if not line.strip():
            continue
        digest, _, name = line.partition('  ')
        if not name:
            # binary mode marker: "<digest> *<name>"
            digest, _, name = line.partition(' *')
        name = name.strip()
        if name.startswith('./'):
            name = name[2:]
        entries[name] = digest.strip().lower()

    return entries


def ensure_manifest(generation) -> Path:
    """Return the manifest, generating it first if it does not exist yet."""
    manifest = Path(generation) / MANIFEST_FILE
    if not manifest.exists():
        logger.warning(f"No manifest in {generation}, generating checksums now (slow path)")
        create_checksums(generation)
    return manifest


def _check_entry(generation: Path, name: str, expected: str) -> str:
    path = generation / name
    try:
        actual = file_digest(path)
    except OSError:
        return f"{name}: {FAILURE_MARKER} open or read"
    if actual != expected:
        return f"{name}: {FAILURE_MARKER}"
    return f"{name}: OK"


def verify(generation, mode: str = 'full', sampler: Optional[Callable] = random.sample) -> VerificationResult:
    """
    Verify a generation against its manifest.

    Args:
        generation: Generation directory
        mode: 'none', 'quick' (at most 5 sampled entries) or 'full'
        sampler: random.sample compatible callable for quick mode; None
            checks the first entries in manifest order

    Returns:
        VerificationResult(mode, checked, failures)

    Raises:
        ValueError: If mode is unknown
        VerifyFailed: Full verification found mismatches
        QuickVerifyFailed: A sampled entry mismatched
    """
    if mode not in VERIFY_MODES:
        raise ValueError(f"Invalid verification mode: {mode}. Valid options: {list(VERIFY_MODES)}")

    generation = Path(generation)

    if mode == 'none':
        return VerificationResult(mode, [], [])

    logger.info(f"Verifying backup in: {generation} (mode: {mode})")
    ensure_manifest(generation)
    entries = read_manifest(generation)
    names = list(entries)

    if mode == 'quick' and len(names) > QUICK_SAMPLE_SIZE:
        if sampler is not None:
            names = sorted(sampler(names, QUICK_SAMPLE_SIZE))
        else:
            names = names[:QUICK_SAMPLE_SIZE]

    transcript = [_check_entry(generation, name, entries[name]) for name in names]
    failures = parse_verify_log('\n'.join(transcript))

    header = f"# {mode} verification {datetime.now().isoformat(timespec='seconds')}"
    (generation / VERIFY_LOG).write_text('\n'.join([header] + transcript) + '\n')

    if failures:
        logger.error(
            f"Backup verification FAILED ({len(failures)} of {len(names)}). "
            f"Check {VERIFY_LOG} in {generation}"
        )
        error_class = QuickVerifyFailed if mode == 'quick' else VerifyFailed
        raise error_class(generation, failures)

    logger.info(f"Backup verified successfully ({len(names)} members checked)")
    return VerificationResult(mode, names, [])


def parse_verify_log(text: str) -> List[str]:
    """
    Extract failed entry names from sha256sum -c style output.

    Lines look like "name: OK", "name: FAILED" or "name: FAILED open or read".
    Comment lines and sha256sum's trailing "WARNING: ..." summary are ignored.

    Args:
        text: Transcript contents

    Returns:
        Names of the entries that failed
    """
    failures = []
    for line in text.splitlines():
        if not line or line.startswith('#') or line.startswith('sha256sum:'):
            continue
        name, sep, status = line.rpartition(': ')
        if sep and status.startswith(FAILURE_MARKER):
            failures.append(name)
    return failures


def last_verification(generation) -> Optional[Dict]:
    """
    Summarize the verify.log of a generation, if one exists.

    Returns:
        Dict with 'passed' and 'failures', or None when never verified
    """
    log_path = Path(generation) / VERIFY_LOG
    if not log_path.exists():
        return None
    failures = parse_verify_log(log_path.read_text())
    return {'passed': not failures, 'failures': failures}
