"""
Loaders that read Nomad job files from disk into ``{"job": {...}}`` mappings.

`LoaderRegistry.for_path` picks the loader from the file extension:

    registry = default_registry()
    config = await registry.for_path("jobs/web.nomad").load("jobs/web.nomad")

The HCL loader only understands the subset of HCL needed for simple jobs:
a single ``job "<id>" { ... }`` block with quoted string attributes and
string lists at its top level. Use `JobsAPI.parse` for full HCL.
"""

from __future__ import annotations

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import anyio
from pydantic import BaseModel, Field

from .exceptions import NomadLoaderError

logger = logging.getLogger(__name__)

VALID_JOB_TYPES = ("service", "batch", "system")

_JOB_BLOCK = re.compile(r'\bjob\s+"([^"]+)"\s*\{')
_STRING_ATTRIBUTE = re.compile(r'(\w+)\s*=\s*"([^"]*)"')
_LIST_ATTRIBUTE = re.compile(r"(\w+)\s*=\s*\[([^\]]*)\]")


class LoadResult(BaseModel):
    data: dict[str, Any]
    file_path: str
    format: str
    loaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class JobLoader(Protocol):
    format: str

    def can_handle(self, path: str | os.PathLike) -> bool: ...

    async def load(self, path: str | os.PathLike) -> dict[str, Any]: ...

    async def load_with_metadata(self, path: str | os.PathLike) -> LoadResult: ...


def validate_job_config(data: dict[str, Any]) -> dict[str, Any]:
    """Checks the fields every loaded job must carry.

    Raises:
        NomadLoaderError: If `job` is missing, has no `id` or `name`, has an
            unknown `type`, or lists no datacenters.
    """
    job = data.get("job")
    if not isinstance(job, dict):
        raise NomadLoaderError('Missing required "job" block')
    if not job.get("id") or not job.get("name"):
        raise NomadLoaderError('Job must have "id" and "name" attributes')
    if job.get("type") not in VALID_JOB_TYPES:
        raise NomadLoaderError(
            f"Job type must be one of: {', '.join(VALID_JOB_TYPES)}"
        )
    datacenters = job.get("datacenters")
    if not isinstance(datacenters, list) or not datacenters:
        raise NomadLoaderError("Job must specify at least one datacenter")
    return data


class BaseJobLoader(ABC):
    """Reads, parses and validates a job file. Subclasses implement `parse`."""

    format: str = ""
    extensions: tuple[str, ...] = ()

    def can_handle(self, path: str | os.PathLike) -> bool:
        return os.path.splitext(os.fspath(path))[1].lower() in self.extensions

    @abstractmethod
    def parse(self, content: str) -> dict[str, Any]:
        """Turns file content into a `{"job": {...}}` mapping."""

    async def load(self, path: str | os.PathLike) -> dict[str, Any]:
        if not os.fspath(path):
            raise NomadLoaderError("File path is required")
        if not self.can_handle(path):
            raise NomadLoaderError(
                f"Unsupported file extension for {os.fspath(path)!r}; "
                f"expected one of: {', '.join(self.extensions)}"
            )
        file = anyio.Path(path)
        if not await file.is_file():
            raise NomadLoaderError(f"Job file not found: {os.fspath(path)}")
        try:
            content = await file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise NomadLoaderError(
                f"Failed to read job file {os.fspath(path)}: {exc}"
            ) from exc

        data = validate_job_config(self.parse(content))
        logger.debug(f"Loaded {self.format} job {data['job']['id']!r} from {path}")
        return data

    async def load_with_metadata(self, path: str | os.PathLike) -> LoadResult:
        data = await self.load(path)
        return LoadResult(data=data, file_path=os.fspath(path), format=self.format)


class JSONJobLoader(BaseJobLoader):
    """Loads `.json` job files, with or without the top-level `job` wrapper."""

    format = "json"
    extensions = (".json",)

    def parse(self, content: str) -> dict[str, Any]:
        try:
            parsed = json.loads(content)
        except ValueError as exc:
            raise NomadLoaderError(f"Invalid JSON format: {exc}") from exc

        if not isinstance(parsed, dict):
            raise NomadLoaderError("Invalid Nomad job configuration structure")
        if "job" in parsed:
            return parsed
        if parsed.get("id") and parsed.get("name") and parsed.get("type"):
            return {"job": parsed}
        raise NomadLoaderError("Invalid Nomad job configuration structure")


def _strip_comments(content: str) -> str:
    out = []
    i, n = 0, len(content)
    in_string = False
    while i < n:
        char = content[i]
        if in_string:
            out.append(char)
            if char == "\\" and i + 1 < n:
                out.append(content[i + 1])
                i += 1
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
            out.append(char)
        elif content.startswith("/*", i):
            end = content.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        elif char == "#" or content.startswith("//", i):
            end = content.find("\n", i)
            i = n if end == -1 else end
            continue
        else:
            out.append(char)
        i += 1
    return "".join(out)


def _top_level(body: str) -> str:
    # Drop nested blocks so only the job's own attributes are matched
    out = []
    depth = 0
    in_string = False
    for char in body:
        if char == '"':
            in_string = not in_string
        elif not in_string and char == "{":
            depth += 1
            continue
        elif not in_string and char == "}":
            depth -= 1
            continue
        if depth == 0:
            out.append(char)
    return "".join(out)


def parse_hcl_job(content: str) -> dict[str, Any]:
    """Converts a simple HCL job block to ``{"job": {...}}``.

    The block label becomes both `id` and `name` unless attributes override
    them.

    Raises:
        NomadLoaderError: If no job block is found or its braces do not match.
    """
    content = _strip_comments(content)
    match = _JOB_BLOCK.search(content)
    if not match:
        raise NomadLoaderError("Invalid HCL format: no job block found")

    depth = 1
    position = match.end()
    in_string = False
    while position < len(content) and depth:
        char = content[position]
        if char == '"':
            in_string = not in_string
        elif not in_string and char == "{":
            depth += 1
        elif not in_string and char == "}":
            depth -= 1
        position += 1
    if depth:
        raise NomadLoaderError("Invalid HCL format: unterminated job block")

    body = _top_level(content[match.end() : position - 1])
    job: dict[str, Any] = {"id": match.group(1), "name": match.group(1)}
    for key, value in _STRING_ATTRIBUTE.findall(body):
        job[key] = value
    for key, items in _LIST_ATTRIBUTE.findall(body):
        job[key] = [
            item.strip().strip('"') for item in items.split(",") if item.strip()
        ]
    return {"job": job}


class HCLJobLoader(BaseJobLoader):
    """Loads `.hcl` and `.nomad` job files with a minimal HCL parser."""

    format = "hcl"
    extensions = (".hcl", ".nomad")

    def parse(self, content: str) -> dict[str, Any]:
        return parse_hcl_job(content)


class LoaderRegistry:
    """Holds job loaders, looked up by format name or by file path.

    Loaders are tried in registration order; the first whose `can_handle`
    accepts a path wins.
    """

    def __init__(self, loaders: list[JobLoader] | None = None):
        self._loaders: dict[str, JobLoader] = {}
        for loader in loaders or []:
            self.register(loader)

    def register(self, loader: JobLoader) -> None:
        self._loaders[loader.format.lower()] = loader

    def get(self, format: str) -> JobLoader:
        try:
            return self._loaders[format.lower()]
        except KeyError:
            raise NomadLoaderError(
                f"No loader registered for format {format!r}. "
                f"Available: {', '.join(self.formats)}"
            ) from None

    def for_path(self, path: str | os.PathLike) -> JobLoader:
        for loader in self._loaders.values():
            if loader.can_handle(path):
                return loader
        raise NomadLoaderError(f"No loader found for file: {os.fspath(path)}")

    @property
    def formats(self) -> list[str]:
        return list(self._loaders)

    async def load(self, path: str | os.PathLike) -> dict[str, Any]:
        return await self.for_path(path).load(path)


def default_registry() -> LoaderRegistry:
    """Returns a registry with the JSON and HCL loaders."""
    return LoaderRegistry([JSONJobLoader(), HCLJobLoader()])
