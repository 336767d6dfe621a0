"""Source strategy for artifacts published by an external source object.

The referenced object (e.g. a Flux GitRepository) reports the artifact in
its status as ``status.artifact.{url,revision,checksum}``. The tarball is
downloaded, verified against the checksum, and only then unpacked.

SECURITY: Archive entries are validated before anything is written. Absolute
names, ``..`` segments, backslashes and any entry that is not a regular file
or directory (symlinks, hard links, devices) are rejected, so a crafted
archive cannot write outside the workspace root.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import os
import shutil
import tarfile
from pathlib import Path, PurePosixPath

import httpx

from .config import DEFAULT_ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS, MAX_ARTIFACT_SIZE_BYTES, USER_AGENT
from .errors import ChecksumMismatchError, SourceAcquisitionError, StoreError, UnsafeArchiveError
from .models import SourceReference
from .session import ReconcileSession
from .source import seed_workspace_env, work_dir_for
from .store import nested_string

logger = logging.getLogger(__name__)

# Flux source-controller <= 0.17.2 published SHA-1 checksums
LEGACY_CHECKSUM_LENGTH = 40


def new_hasher(checksum: str) -> hashlib._Hash:
    """Pick the digest algorithm implied by the length of the expected checksum."""
    if len(checksum) == LEGACY_CHECKSUM_LENGTH:
        return hashlib.sha1()
    return hashlib.sha256()


def verify_checksum(data: bytes, checksum: str) -> None:
    """Raise ChecksumMismatchError unless data hashes to checksum."""
    hasher = new_hasher(checksum)
    hasher.update(data)
    actual = hasher.hexdigest()
    if actual != checksum.lower():
        raise ChecksumMismatchError(expected=checksum, actual=actual)


def is_valid_member_name(name: str) -> bool:
    """Whether an archive entry name is a safe relative path."""
    if not name or "\\" in name or name.startswith("/"):
        return False
    return ".." not in PurePosixPath(name).parts


def extract_tarball(data: bytes, dest: Path) -> int:
    """Extract a gzip-compressed tarball into dest.

    Returns:
        Number of regular files written.

    Raises:
        UnsafeArchiveError: If an entry name is unsafe or its type unsupported.
        SourceAcquisitionError: If the data is not a readable gzip tarball.
    """
    root = dest.resolve()
    files = 0
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            for member in tar:
                if not is_valid_member_name(member.name):
                    raise UnsafeArchiveError(f"tar contained invalid name {member.name!r}")
                target = (root / member.name).resolve()
                if target != root and root not in target.parents:
                    raise UnsafeArchiveError(f"tar entry {member.name!r} escapes the destination")

                if member.isdir():
                    target.mkdir(mode=0o755, parents=True, exist_ok=True)
                elif member.isreg():
                    target.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
                    source = tar.extractfile(member)
                    assert source is not None
                    fd = os.open(target, os.O_RDWR | os.O_CREAT | os.O_TRUNC, member.mode & 0o777)
                    with os.fdopen(fd, "wb") as out:
                        shutil.copyfileobj(source, out)
                    files += 1
                else:
                    raise UnsafeArchiveError(
                        f"tar file entry {member.name!r} contained unsupported file type"
                    )
    except (tarfile.ReadError, EOFError) as e:
        raise SourceAcquisitionError(f"requires gzip-compressed tarball: {e}") from e
    return files


class ArtifactSource:
    """Downloads and unpacks the artifact of an external source object."""

    def __init__(
        self,
        source_ref: SourceReference,
        timeout_seconds: float = DEFAULT_ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._source_ref = source_ref
        self._timeout = timeout_seconds
        self._transport = transport

    async def acquire(self, session: ReconcileSession) -> tuple[Path, str]:
        ref = self._source_ref
        try:
            obj = await session.store.get_source(
                session.namespace, ref.api_version, ref.kind, ref.name
            )
        except StoreError as e:
            raise SourceAcquisitionError(f"could not resolve sourceRef: {e}") from e

        url = nested_string(obj, "status", "artifact", "url")
        if url is None:
            raise SourceAcquisitionError("expected source to have .status.artifact.url, but it did not")
        revision = nested_string(obj, "status", "artifact", "revision")
        if revision is None:
            raise SourceAcquisitionError("did not find revision in .status.artifact")
        checksum = nested_string(obj, "status", "artifact", "checksum")
        if checksum is None:
            raise SourceAcquisitionError("did not find checksum in .status.artifact")

        root = session.make_root_dir("pulumi_source")
        data = await self.download(url)
        verify_checksum(data, checksum)

        loop = asyncio.get_running_loop()
        files = await loop.run_in_executor(None, extract_tarball, data, root)
        logger.info(
            "Extracted source artifact",
            extra={
                "stack": session.stack.key,
                "source": f"{ref.kind}/{ref.name}",
                "revision": revision,
                "files": files,
            },
        )

        work_dir = work_dir_for(session)
        await seed_workspace_env(session)
        return work_dir, revision

    async def download(self, url: str) -> bytes:
        """Fetch the artifact body, enforcing a 200 response and the size limit."""
        buf = bytearray()
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"User-Agent": USER_AGENT},
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != httpx.codes.OK:
                        raise SourceAcquisitionError(
                            f"failed to download artifact from {url}, "
                            f"status {response.status_code} (expected 200 OK)"
                        )
                    async for chunk in response.aiter_bytes():
                        buf.extend(chunk)
                        if len(buf) > MAX_ARTIFACT_SIZE_BYTES:
                            raise SourceAcquisitionError(
                                f"artifact from {url} exceeds {MAX_ARTIFACT_SIZE_BYTES} bytes"
                            )
        except httpx.HTTPError as e:
            raise SourceAcquisitionError(f"request for artifact failed: {e}") from e
        return bytes(buf)
