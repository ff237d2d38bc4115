# ABOUTME: Manifest source (read-only git access) and desired-state parser
# ABOUTME: Turns manifest files at one git revision into a validated DesiredState

"""
Desired state comes from git and only from git.

GitManifestSource reads files *at a commit* (``git ls-tree`` + ``git show``)
instead of from the working tree. Every DesiredState is therefore pinned to
the revision it was read from, and a manual sync or a promotion can target an
older commit without checking anything out. The controller never commits,
pushes or otherwise writes to the repository.

parse_manifests validates each document independently. A broken document
becomes a MalformedManifest entry on the DesiredState and the remaining
documents are still reconciled. A duplicated identity is different: it makes
the whole manifest set ambiguous, so DuplicateResource aborts the cycle.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from gitops_reconciler.errors import DuplicateResource, MalformedManifest, ManifestSourceUnavailable
from gitops_reconciler.models import DesiredState, ResourceDescriptor, ResourceKey
from gitops_reconciler.utils.client import API_RESOURCES, SUPPORTED_KINDS

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = structlog.get_logger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")

# Fields the API server fills in. They are meaningless in git and would make
# every comparison fail, so they are dropped from desired manifests.
SERVER_METADATA_FIELDS = frozenset(
    {
        "uid",
        "resourceVersion",
        "generation",
        "creationTimestamp",
        "deletionTimestamp",
        "deletionGracePeriodSeconds",
        "managedFields",
        "selfLink",
    }
)


class ManifestLoader(yaml.SafeLoader):
    """SafeLoader that leaves unquoted timestamps as plain strings."""


ManifestLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

# Scalar types a manifest may carry; anything else cannot be sent as JSON.
JSON_SCALARS = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class ManifestFile:
    """Raw contents of one manifest file at one revision."""

    path: str
    content: bytes


# =============================================================================
# MANIFEST SOURCE
# =============================================================================


class GitManifestSource:
    """Pull-only access to manifests in a local git clone."""

    def __init__(
        self,
        repo_path: Path,
        path: str = ".",
        target_revision: str = "HEAD",
        fetch: bool = False,
        git_binary: str = "git",
        timeout: float = 60.0,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.path = path
        self.target_revision = target_revision
        self.fetch = fetch
        self._git_binary = git_binary
        self._timeout = timeout

    def __repr__(self) -> str:
        return (
            f"GitManifestSource({self.repo_path}, path={self.path!r}, "
            f"ref={self.target_revision!r})"
        )

    async def _git(self, *args: str) -> str:
        output = await self._git_bytes(*args)
        # Paths are handed back to git as arguments, so undecodable bytes must survive.
        return output.decode(errors="surrogateescape")

    async def _git_bytes(self, *args: str) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._git_binary,
                "-C",
                str(self.repo_path),
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ManifestSourceUnavailable(f"Cannot run git: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise ManifestSourceUnavailable(
                f"git {args[0]} timed out after {self._timeout:.0f}s"
            ) from None

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise ManifestSourceUnavailable(f"git {args[0]} failed in {self.repo_path}: {message}")
        return stdout

    async def resolve(self, revision: str) -> str:
        """Resolve a branch, tag or short SHA to a full commit SHA."""
        output = await self._git("rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}")
        return output.strip()

    async def current_revision(self) -> str:
        """Commit the target revision points at right now (fetching first if enabled)."""
        if self.fetch:
            await self._git("fetch", "--quiet", "--prune")
        return await self.resolve(self.target_revision)

    async def load(self, revision: str | None = None) -> tuple[str, list[ManifestFile]]:
        """
        Read every manifest file under ``path`` at ``revision``.

        Args:
            revision: Commit-ish to read. Defaults to the current target revision.

        Returns:
            (resolved commit SHA, manifest files in path order)
        """
        sha = await self.resolve(revision) if revision else await self.current_revision()

        ls_args = ["ls-tree", "-r", "-z", "--name-only", sha]
        if self.path != ".":
            ls_args += ["--", f"{self.path}/"]
        listing = await self._git(*ls_args)

        names = sorted(n for n in listing.split("\0") if n.endswith(MANIFEST_SUFFIXES))
        files = [
            ManifestFile(path=name, content=await self._git_bytes("show", f"{sha}:{name}"))
            for name in names
        ]

        logger.debug("Loaded manifests", revision=sha[:12], path=self.path, files=len(files))
        return sha, files


# =============================================================================
# DESIRED-STATE PARSER
# =============================================================================


def _expand(documents: Iterable[Any]) -> Iterator[Any]:
    """Flatten ``kind: List`` documents into their items."""
    for doc in documents:
        items = doc.get("items") if isinstance(doc, dict) and doc.get("kind") == "List" else None
        if isinstance(items, list):
            yield from items
        else:
            yield doc


def _non_json_value(value: Any, path: str = "") -> str | None:
    """Dotted path of the first value JSON cannot represent, or None."""
    if isinstance(value, dict):
        for name, item in value.items():
            if not isinstance(name, str):
                return f"{path}.{name!r}" if path else repr(name)
            found = _non_json_value(item, f"{path}.{name}" if path else name)
            if found is not None:
                return found
        return None
    if isinstance(value, list):
        for index, item in enumerate(value):
            found = _non_json_value(item, f"{path}[{index}]")
            if found is not None:
                return found
        return None
    return None if isinstance(value, JSON_SCALARS) else path


def normalize_manifest(doc: dict[str, Any], namespace: str) -> dict[str, Any]:
    """Copy a manifest without server-populated fields, with its namespace set."""
    manifest = copy.deepcopy(doc)
    manifest.pop("status", None)
    metadata = manifest.setdefault("metadata", {})
    for name in SERVER_METADATA_FIELDS:
        metadata.pop(name, None)
    metadata["namespace"] = namespace
    return manifest


def build_descriptor(
    doc: Any,
    source: str,
    default_namespace: str | None = None,
) -> ResourceDescriptor:
    """
    Validate one manifest document.

    Raises:
        MalformedManifest: With ``key`` set whenever kind, name and namespace
            could be determined, so the identity is still protected from pruning.
    """
    if not isinstance(doc, dict):
        raise MalformedManifest(source, "document is not a mapping")

    kind = doc.get("kind")
    if not isinstance(kind, str) or not kind:
        raise MalformedManifest(source, "missing required field 'kind'")

    metadata = doc.get("metadata")
    if not isinstance(metadata, dict):
        raise MalformedManifest(source, "missing required field 'metadata'")

    name = metadata.get("name")
    if not isinstance(name, str) or not name:
        raise MalformedManifest(source, "missing required field 'metadata.name'")

    namespace = metadata.get("namespace") or default_namespace
    if not isinstance(namespace, str) or not namespace:
        raise MalformedManifest(source, "missing required field 'metadata.namespace'")

    key = ResourceKey(kind=kind, namespace=namespace, name=name)

    if kind not in SUPPORTED_KINDS:
        raise MalformedManifest(source, f"unsupported kind '{kind}'", key=key)
    api_version = doc.get("apiVersion")
    if not isinstance(api_version, str) or not api_version:
        raise MalformedManifest(source, "missing required field 'apiVersion'", key=key)
    served = API_RESOURCES[kind].group_version
    if api_version != served:
        raise MalformedManifest(
            source, f"apiVersion '{api_version}' not supported for {kind}, use '{served}'", key=key
        )
    for section in ("labels", "annotations"):
        if metadata.get(section) is not None and not isinstance(metadata[section], dict):
            raise MalformedManifest(source, f"metadata.{section} must be a mapping", key=key)
    bad_path = _non_json_value(doc)
    if bad_path is not None:
        raise MalformedManifest(source, f"'{bad_path}' is not a JSON value", key=key)

    return ResourceDescriptor(key=key, manifest=normalize_manifest(doc, namespace), source=source)


def parse_manifests(
    files: Iterable[ManifestFile],
    revision: str,
    default_namespace: str | None = None,
) -> DesiredState:
    """
    Build a DesiredState from manifest files.

    Args:
        files: Manifest files (YAML, multi-document YAML or JSON).
        revision: Revision the files were read at.
        default_namespace: Namespace for documents that omit one.

    Raises:
        DuplicateResource: If two documents declare the same identity.
    """
    desired = DesiredState(revision=revision)
    declared_in: dict[ResourceKey, str] = {}

    for file in files:
        try:
            documents = list(yaml.load_all(file.content.decode("utf-8"), Loader=ManifestLoader))
        except (UnicodeDecodeError, yaml.YAMLError) as e:
            if isinstance(e, UnicodeDecodeError):
                reason = "not valid UTF-8"
            else:
                reason = f"invalid YAML: {e}"
            error = MalformedManifest(file.path, reason)
            logger.warning("Skipping malformed manifest", source=file.path, reason=error.reason)
            desired.malformed.append(error)
            continue

        for index, doc in enumerate(_expand(documents)):
            if doc is None:
                continue
            source = f"{file.path}#{index}"
            try:
                descriptor = build_descriptor(doc, source, default_namespace)
            except MalformedManifest as e:
                logger.warning("Skipping malformed manifest", source=source, reason=e.reason)
                desired.malformed.append(e)
                continue

            if descriptor.key in declared_in:
                raise DuplicateResource(descriptor.key, [declared_in[descriptor.key], source])
            declared_in[descriptor.key] = source
            desired.resources[descriptor.key] = descriptor

    return desired
