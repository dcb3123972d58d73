"""Deployment Updater — rewrites the image reference in a deployment descriptor.

Manifesto:
    The descriptor is plain text owned by humans; only the ``image:`` line
for our registry/repository prefix is ours to touch.  Every other byte
(comments, indentation, line endings, other containers) must survive an
update untouched, and re-applying the same reference must be a no-op so a
repeated run never produces an empty or duplicate commit.

    The commit written here is one half of the self-trigger loop break: its
message carries the ``LoopGuard`` marker, and the push trigger ignores the
descriptor path (the other half, in ``TriggerFilter``).

ARCHITECTURE
────────────
::

    DeploymentUpdater(prefix, loop_guard, vcs)
      ├── apply(descriptor, new_ref) -> (updated, changed)   pure
      ├── update_file(path, new_ref, tag) -> UpdateResult   file + commit
      └── as_tool() -> callable for the "update-deployment" job

Tags:
    shipline, deploy, descriptor, idempotent, gitops

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

import structlog

from shipline.core.errors import DescriptorFormatError, InvalidConfigError
from shipline.deploy.vcs import CommitResult, GitClient
from shipline.execution.adapters import ToolRequest, ToolResponse
from shipline.orchestration.trigger import LoopGuard

logger = structlog.get_logger()


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of one descriptor update."""

    path: str
    image: str
    changed: bool
    previous: list[str]
    commit: CommitResult | None = None

    def to_outputs(self) -> dict[str, str]:
        if self.commit is not None:
            outcome, sha = self.commit.outcome.value, self.commit.sha or ""
        else:
            outcome, sha = ("written" if self.changed else "noop"), ""
        return {
            "image": self.image,
            "changed": str(self.changed).lower(),
            "commit_outcome": outcome,
            "commit_sha": sha,
        }


class DeploymentUpdater:
    """Idempotent ``image:`` line rewriter with a loop-marked commit."""

    def __init__(
        self,
        image_prefix: str,
        loop_guard: LoopGuard | None = None,
        vcs: GitClient | None = None,
        push: bool = False,
    ):
        """
        Args:
            image_prefix: ``<registry>/<repository>`` matched before ``:<tag>``
            loop_guard: Marker and descriptor path shared with the trigger filter
            vcs: Working copy to commit into (``None`` writes the file only)
            push: Push after committing
        """
        if not image_prefix or ":" in image_prefix.rsplit("/", 1)[-1]:
            raise InvalidConfigError("image_prefix", image_prefix, "Image prefix must not carry a tag")
        self.image_prefix = image_prefix
        self.loop_guard = loop_guard or LoopGuard()
        self.vcs = vcs
        self.push = push
        self._pattern = re.compile(
            r"^(?P<lead>[ \t]*(?:-[ \t]*)?image:[ \t]*)(?P<quote>[\"']?)"
            + re.escape(image_prefix)
            + r"(?:[:@][^\s\"']+)?(?P=quote)(?P<trail>[ \t]*(?:#[^\r\n]*)?\r?)$",
            re.MULTILINE,
        )
        self._reference = re.compile(re.escape(image_prefix) + r"(?:[:@][^\s\"']+)?")

    def owns(self, reference: str) -> bool:
        """True when ``reference`` names exactly the configured repository."""
        return self._reference.fullmatch(reference) is not None

    def current_references(self, descriptor: str) -> list[str]:
        """Image references currently on matching lines."""
        refs = []
        for match in self._pattern.finditer(descriptor):
            line = match.group(0)
            value = line[len(match.group("lead")):len(line) - len(match.group("trail"))]
            refs.append(value.strip("\"'"))
        return refs

    def apply(self, descriptor: str, new_reference: str) -> tuple[str, bool]:
        """Replace every matching ``image:`` reference with ``new_reference``.

        Returns the updated text and whether it differs from the input.

        Raises:
            DescriptorFormatError: No line references the configured prefix
        """
        if not self.owns(new_reference):
            raise InvalidConfigError(
                "image", new_reference, f"Image must be '{self.image_prefix}[:tag|@digest]'"
            )

        def replace(match: re.Match[str]) -> str:
            quote = match.group("quote")
            return f"{match.group('lead')}{quote}{new_reference}{quote}{match.group('trail')}"

        updated, count = self._pattern.subn(replace, descriptor)
        if count == 0:
            raise DescriptorFormatError(self.image_prefix)
        return updated, updated != descriptor

    def update_file(self, path: Path | str, new_reference: str, tag: str | None = None) -> UpdateResult:
        """Rewrite the descriptor on disk and commit it when it changed."""
        descriptor_path = Path(path)
        if not descriptor_path.is_absolute() and self.vcs is not None:
            descriptor_path = self.vcs.root / descriptor_path
        # newline="" keeps CRLF descriptors byte-identical outside the image line
        with open(descriptor_path, encoding="utf-8", newline="") as fh:
            original = fh.read()

        try:
            updated, changed = self.apply(original, new_reference)
        except DescriptorFormatError as e:
            e.with_context(path=str(descriptor_path))
            raise
        previous = self.current_references(original)

        commit = None
        if changed:
            with open(descriptor_path, "w", encoding="utf-8", newline="") as fh:
                fh.write(updated)
            logger.info("deploy.descriptor_updated", path=str(descriptor_path), image=new_reference, previous=previous)
            if self.vcs is not None:
                relative = descriptor_path.resolve().relative_to(self.vcs.root.resolve())
                commit = self.vcs.commit_file(
                    relative.as_posix(),
                    self.loop_guard.commit_message(new_reference, tag),
                    push=self.push,
                )
        else:
            logger.info("deploy.descriptor_unchanged", path=str(descriptor_path), image=new_reference)

        return UpdateResult(
            path=str(descriptor_path),
            image=new_reference,
            changed=changed,
            previous=previous,
            commit=commit,
        )

    def as_tool(self, source_job: str = "docker", image_key: str = "image", tag_key: str = "image_tag"):
        """Tool body for the deployment job; reads the image from ``source_job``'s outputs."""

        def update_deployment(request: ToolRequest) -> ToolResponse:
            image = request.input(source_job, image_key)
            tag = request.input(source_job, tag_key)
            if image is None and tag is not None:
                image = f"{self.image_prefix}:{tag}"
            if image is None:
                return ToolResponse.fail(f"No image reference received from '{source_job}'")
            path = request.args[0] if request.args else self.loop_guard.descriptor_path
            if request.cwd and not Path(path).is_absolute() and self.vcs is None:
                path = str(Path(request.cwd) / path)
            result = self.update_file(path, image, tag)
            return ToolResponse.ok(result.to_outputs())

        return update_deployment
