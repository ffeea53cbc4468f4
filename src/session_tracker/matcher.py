"""Associate externally produced recordings with sessions."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Sequence

from .config import (
    DEFAULT_IMAGE_EXTENSIONS,
    DEFAULT_VIDEO_EXTENSIONS,
    MatchingSettings,
    StoragePaths,
)

logger = logging.getLogger(__name__)

REASON_DIRECTORY = "directory"
REASON_FILENAME = "filename"


@dataclass(frozen=True, slots=True)
class FilenameRule:
    """A filename convention linking a file to a session id.

    ``template`` holds an ``{id}`` placeholder. Matching is case-insensitive
    and never lets ``session42`` match ``session420``.
    """

    name: str
    template: str

    def __post_init__(self) -> None:
        if self.template.count("{id}") != 1:
            raise ValueError(f"Filename rule {self.name!r} needs exactly one {{id}} placeholder")

    @property
    def has_marker(self) -> bool:
        """True when the template names the session explicitly."""

        return any(char.isalpha() for char in self.template.replace("{id}", ""))

    def _regex(self, id_pattern: str) -> re.Pattern[str]:
        prefix, _, suffix = self.template.partition("{id}")
        parts: list[str] = []
        if prefix[:1].isalpha():
            parts.append(r"(?<![A-Za-z])")
        parts.append(re.escape(prefix))
        if not prefix:
            parts.append(r"(?<!\d)")
        parts.append(id_pattern)
        if not suffix or suffix[:1].isdigit():
            parts.append(r"(?!\d)")
        parts.append(re.escape(suffix))
        return re.compile("".join(parts), re.IGNORECASE)

    def matches(self, filename: str, session_id: int) -> bool:
        return self._regex(re.escape(str(int(session_id)))).search(filename) is not None

    def session_ids(self, filename: str) -> set[int]:
        return {int(match.group(1)) for match in self._regex(r"(\d+)").finditer(filename)}


DEFAULT_RULES: tuple[FilenameRule, ...] = (
    FilenameRule("session", "session{id}"),
    FilenameRule("session_underscore", "session_{id}"),
    FilenameRule("sesion", "sesion{id}"),
    FilenameRule("sesion_underscore", "sesion_{id}"),
    FilenameRule("sess", "sess{id}"),
    FilenameRule("s_prefix", "s{id}_"),
    FilenameRule("dashed_session", "-session{id}-"),
    FilenameRule("underscored_id", "_{id}_"),
    FilenameRule("dashed_id", "-{id}-"),
    FilenameRule("underscore_id_ext", "_{id}."),
    FilenameRule("dash_id_ext", "-{id}."),
)


def session_directory_names(session_id: int) -> frozenset[str]:
    """Names of first-level directories dedicated to ``session_id``."""

    sid = int(session_id)
    return frozenset(
        name.lower()
        for name in (
            f"session{sid}",
            f"session_{sid}",
            f"session-{sid}",
            f"sesion{sid}",
            f"s{sid}",
        )
    )


_DEDICATED_DIRECTORY = re.compile(r"(?:session[_-]?|sesion|s)(\d+)", re.IGNORECASE)


def dedicated_session_id(name: str) -> int | None:
    """Session id a directory name is dedicated to, if any."""

    match = _DEDICATED_DIRECTORY.fullmatch(name)
    return int(match.group(1)) if match else None


def is_session_tagged(filename: str, session_id: int) -> bool:
    """Whether ``filename`` carries a ``_session{id}``/``-session{id}`` tag."""

    pattern = rf"[_-]session{int(session_id)}(?!\d)"
    return re.search(pattern, filename, re.IGNORECASE) is not None


class RootScope(str, Enum):
    GLOBAL = "global"
    SESSION = "session"


@dataclass(frozen=True, slots=True)
class SearchRoot:
    """A directory to scan; session-scoped roots include every video."""

    path: Path
    scope: RootScope = RootScope.GLOBAL

    @classmethod
    def coerce(cls, value: "SearchRoot | Path | str") -> "SearchRoot":
        if isinstance(value, SearchRoot):
            return value
        return cls(Path(value))

    def to_dict(self) -> dict[str, object]:
        return {"path": str(self.path), "scope": self.scope.value, "exists": self.path.is_dir()}


@dataclass(frozen=True, slots=True)
class RecordingFile:
    path: Path
    size: int
    discovered_in_root: Path
    match_reason: str

    def to_dict(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "name": self.path.name,
            "size": self.size,
            "root": str(self.discovered_in_root),
            "reason": self.match_reason,
        }


@dataclass(frozen=True, slots=True)
class MatchResult:
    """Everything the matcher decided for one session."""

    session_id: int
    recordings: tuple[RecordingFile, ...]
    thumbnails: tuple[RecordingFile, ...]
    ambiguous: tuple[str, ...]
    roots: tuple[SearchRoot, ...]
    rules: tuple[FilenameRule, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "recordings": [item.to_dict() for item in self.recordings],
            "thumbnails": [item.to_dict() for item in self.thumbnails],
            "ambiguous": list(self.ambiguous),
            "roots": [root.to_dict() for root in self.roots],
            "rules": [{"name": rule.name, "template": rule.template} for rule in self.rules],
        }


def default_search_roots(storage: StoragePaths, session_id: int) -> tuple[SearchRoot, ...]:
    return (
        SearchRoot(storage.recordings_root, RootScope.GLOBAL),
        SearchRoot(storage.session_recordings_dir(session_id), RootScope.SESSION),
    )


@dataclass(slots=True)
class _Candidate:
    root_index: int
    item: RecordingFile
    is_video: bool


class RecordingMatcher:
    """Select the recordings and thumbnails belonging to a session."""

    def __init__(
        self,
        rules: Iterable[FilenameRule] = DEFAULT_RULES,
        *,
        video_extensions: Iterable[str] = DEFAULT_VIDEO_EXTENSIONS,
        image_extensions: Iterable[str] = DEFAULT_IMAGE_EXTENSIONS,
    ) -> None:
        self._rules = tuple(rules)
        if not self._rules:
            raise ValueError("At least one filename rule is required")
        self._video_extensions = frozenset(ext.lower() for ext in video_extensions)
        self._image_extensions = frozenset(ext.lower() for ext in image_extensions)

    @classmethod
    def from_settings(cls, settings: MatchingSettings) -> "RecordingMatcher":
        extra = tuple(FilenameRule(name, template) for name, template in settings.extra_rules)
        return cls(
            DEFAULT_RULES + extra,
            video_extensions=settings.video_extensions,
            image_extensions=settings.image_extensions,
        )

    @property
    def rules(self) -> tuple[FilenameRule, ...]:
        return self._rules

    def is_video(self, path: Path) -> bool:
        return path.suffix.lower() in self._video_extensions

    def is_image(self, path: Path) -> bool:
        return path.suffix.lower() in self._image_extensions

    def matching_rule(self, filename: str, session_id: int) -> FilenameRule | None:
        for rule in self._rules:
            if rule.matches(filename, session_id):
                return rule
        return None

    def other_session_ids(self, filename: str, session_id: int) -> set[int]:
        found: set[int] = set()
        for rule in self._rules:
            if rule.has_marker:
                found |= rule.session_ids(filename)
        found.discard(int(session_id))
        return found

    def find_recordings(
        self,
        session_id: int,
        search_roots: Sequence[SearchRoot | Path | str],
    ) -> tuple[RecordingFile, ...]:
        return self.match(session_id, search_roots).recordings

    def match(
        self,
        session_id: int,
        search_roots: Sequence[SearchRoot | Path | str],
    ) -> MatchResult:
        session_id = int(session_id)
        roots = tuple(SearchRoot.coerce(root) for root in search_roots)
        candidates: list[_Candidate] = []
        for index, root in enumerate(roots):
            if not root.path.is_dir():
                logger.debug("Search root %s does not exist", root.path)
                continue
            if root.scope is RootScope.SESSION:
                candidates.extend(self._scan_session_dir(index, root.path, root.path, depth=1))
            else:
                candidates.extend(self._scan_global_root(index, root.path, session_id))

        seen: set[Path] = set()
        recordings: list[_Candidate] = []
        thumbnails: list[_Candidate] = []
        for candidate in candidates:
            try:
                canonical = candidate.item.path.resolve()
            except OSError:
                canonical = candidate.item.path.absolute()
            if canonical in seen:
                continue
            seen.add(canonical)
            (recordings if candidate.is_video else thumbnails).append(candidate)

        def _order(candidate: _Candidate) -> tuple[int, str, str]:
            return candidate.root_index, candidate.item.path.name, str(candidate.item.path)

        recordings.sort(key=_order)
        thumbnails.sort(key=_order)

        ambiguous: list[str] = []
        for candidate in recordings:
            others = self.other_session_ids(candidate.item.path.name, session_id)
            if others:
                ambiguous.append(candidate.item.path.name)
                logger.warning(
                    "Recording %s matched session %s but also names session(s) %s",
                    candidate.item.path,
                    session_id,
                    ", ".join(str(other) for other in sorted(others)),
                )

        return MatchResult(
            session_id=session_id,
            recordings=tuple(candidate.item for candidate in recordings),
            thumbnails=tuple(candidate.item for candidate in thumbnails),
            ambiguous=tuple(ambiguous),
            roots=roots,
            rules=self._rules,
        )

    # ----------------------------- implementation --------------------------
    def _entries(self, directory: Path) -> list[Path]:
        try:
            return sorted(directory.iterdir(), key=lambda path: path.name)
        except OSError as exc:
            logger.warning("Unable to scan %s: %s", directory, exc)
            return []

    def _candidate(self, root_index: int, root: Path, path: Path, reason: str) -> _Candidate | None:
        is_video = self.is_video(path)
        if not is_video and not self.is_image(path):
            return None
        try:
            if not path.is_file():
                return None
            size = path.stat().st_size
        except OSError as exc:
            logger.warning("Unable to stat %s: %s", path, exc)
            return None
        if size == 0:
            logger.debug("Skipping empty file %s", path)
            return None
        return _Candidate(root_index, RecordingFile(path, size, root, reason), is_video)

    def _scan_session_dir(self, root_index: int, root: Path, directory: Path, *, depth: int) -> list[_Candidate]:
        found: list[_Candidate] = []
        for entry in self._entries(directory):
            if entry.is_dir():
                if depth > 0:
                    found.extend(self._scan_session_dir(root_index, root, entry, depth=depth - 1))
                continue
            candidate = self._candidate(root_index, root, entry, REASON_DIRECTORY)
            if candidate is not None:
                found.append(candidate)
        return found

    def _scan_global_root(self, root_index: int, root: Path, session_id: int) -> list[_Candidate]:
        found: list[_Candidate] = []
        dedicated = session_directory_names(session_id)
        for entry in self._entries(root):
            if entry.is_dir():
                if entry.name.lower() in dedicated:
                    found.extend(self._scan_session_dir(root_index, root, entry, depth=1))
                elif dedicated_session_id(entry.name) not in (None, session_id):
                    logger.debug("Skipping %s, it belongs to another session", entry)
                else:
                    found.extend(self._match_files(root_index, root, self._entries(entry), session_id))
                continue
            found.extend(self._match_files(root_index, root, [entry], session_id))
        return found

    def _match_files(
        self,
        root_index: int,
        root: Path,
        entries: Iterable[Path],
        session_id: int,
    ) -> list[_Candidate]:
        found: list[_Candidate] = []
        for entry in entries:
            if entry.is_dir():
                continue
            rule = self.matching_rule(entry.name, session_id)
            if rule is None:
                continue
            candidate = self._candidate(root_index, root, entry, f"{REASON_FILENAME}:{rule.name}")
            if candidate is not None:
                found.append(candidate)
        return found


__all__ = [
    "DEFAULT_RULES",
    "FilenameRule",
    "MatchResult",
    "RecordingFile",
    "RecordingMatcher",
    "RootScope",
    "SearchRoot",
    "dedicated_session_id",
    "default_search_roots",
    "is_session_tagged",
    "session_directory_names",
]
