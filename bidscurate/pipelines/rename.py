"""
Rename subject and session labels without breaking any reference.

A rename touches, in this order:

1. recordings (the adapter also rewrites names embedded in their content);
2. other files whose name carries the old label;
3. directories, deepest first, so no path is invalidated before use;
4. the text of scan indexes, located by the *new* label because step 2
   already renamed them;
5. cross-reference fields of JSON sidecars (``AssociatedEmptyRoom``,
   ``DigitizedHeadPoints``…); anything that cannot be rewritten with
   confidence is reported so a rebuild can fix it.

The same rename is then applied to the mirrored sub-dataset trees
(``sourcedata``, ``derivatives``, ``extras``).

Labels are never swapped in place: :meth:`RenameEngine.rename_with_collision_avoidance`
first moves an occupying session to a temporary label.
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Set

import pandas as pd
import structlog

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.audit import AuditTrail
from bidscurate.io.raw import DsFolderAdapter, RawSourceAdapter
from bidscurate.io.sidecars import SidecarStore
from bidscurate.models import Recording, RecordingName
from bidscurate.pipelines.ledger import ShiftLedger
from bidscurate.utils.errors import ConsistencyError, UsageError
from bidscurate.utils.messages import MessageLog

log = structlog.get_logger()

__all__ = ["LabelRename", "RenameEngine", "clean_label"]

_LABEL_RE = re.compile(r"^[A-Za-z0-9]+$")
_ANY = "[a-zA-Z0-9]*"


def clean_label(text: str, entity: str = "sub") -> str:
    """Strip a ``sub-``/``ses-`` prefix plus any ``_`` and ``-`` from *text*."""
    text = str(text).strip()
    if text.startswith(f"{entity}-"):
        text = text[len(entity) + 1:]
    return text.replace("_", "").replace("-", "")


# --------------------------------------------------------------------------- #
# 1.  Regular-expression pair for one label change                            #
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class LabelRename:
    """Old/new label of one entity, in full or partial (substring) mode.

    Args:
        entity: ``"sub"`` or ``"ses"``.
        old: Current label, or the substring to replace in partial mode.
        new: Replacement.
        full: Replace whole labels only.

    Raises:
        UsageError: On non-alphanumeric labels, identical labels, or a
            partial rename whose new text contains the old one.
    """

    entity: str
    old: str
    new: str
    full: bool = False

    def __post_init__(self) -> None:
        if self.entity not in {"sub", "ses"}:
            raise UsageError(f"Unknown entity {self.entity!r}")
        for label in (self.old, self.new):
            if not _LABEL_RE.match(label or ""):
                raise UsageError(f"Labels must be alphanumeric, got {label!r}")
        if self.old == self.new:
            raise UsageError(f"Old and new {self.entity} labels are both {self.old!r}")
        if not self.full and self.old in self.new:
            raise UsageError(
                f"Partial rename: new text {self.new!r} must not contain {self.old!r}"
            )

    # ------------------------------------------------------------------ #
    def _pattern(self, label: str, terminator: str) -> re.Pattern:
        if self.full:
            return re.compile(rf"{self.entity}-{re.escape(label)}{terminator}")
        return re.compile(rf"{self.entity}-({_ANY}){re.escape(label)}({_ANY}){terminator}")

    def _repl(self, terminator: str) -> str:
        if self.full:
            return f"{self.entity}-{self.new}{terminator}"
        return rf"{self.entity}-\g<1>{self.new}\g<2>{terminator}"

    @property
    def name_re(self) -> re.Pattern:
        """Old label inside a file name (entity followed by ``_``)."""
        return self._pattern(self.old, "_")

    @property
    def new_name_re(self) -> re.Pattern:
        return self._pattern(self.new, "_")

    @property
    def folder_re(self) -> re.Pattern:
        """Old label as a whole folder name (use with ``fullmatch``)."""
        return self._pattern(self.old, "")

    # ------------------------------------------------------------------ #
    def in_name(self, text: str) -> str:
        return self.name_re.sub(self._repl("_"), text)

    def folder(self, name: str) -> Optional[str]:
        """New folder name when *name* is an old-label folder, else ``None``."""
        if not self.folder_re.fullmatch(name):
            return None
        return self.folder_re.sub(self._repl(""), name)

    def rewrite_path(self, text: str) -> str:
        """Rewrite every ``/``-separated component of a relative path."""
        parts = []
        for part in text.split("/"):
            renamed = self.folder(part)
            parts.append(renamed if renamed is not None else self.in_name(part))
        return "/".join(parts)

    def mentions(self, text: str) -> bool:
        return bool(self.name_re.search(text)) or any(
            self.folder_re.fullmatch(part) for part in text.split("/")
        )

    def leftover(self, text: str) -> bool:
        """True when *text* still holds the old label after rewriting."""
        if self.full:
            loose = rf"{self.entity}-{re.escape(self.old)}(?![A-Za-z0-9])"
        else:
            loose = rf"{self.entity}-{_ANY}{re.escape(self.old)}"
        return re.search(loose, text) is not None


# --------------------------------------------------------------------------- #
# 2.  Engine                                                                  #
# --------------------------------------------------------------------------- #
class RenameEngine:
    """Subject/session/recording renames for one dataset.

    Args:
        root: Dataset root.
        cfg: Configuration (layout, sub-datasets, cross-reference fields).
        adapter: Raw-source adapter used to move recordings.
        messages: Message log shared with the caller.
        dry_run: Report every step without modifying the tree.
        audit: Write an audit table per public call.
    """

    def __init__(
        self,
        root: Path,
        cfg: Optional[ConfigSchema] = None,
        adapter: Optional[RawSourceAdapter] = None,
        *,
        messages: Optional[MessageLog] = None,
        dry_run: bool = False,
        audit: bool = True,
    ) -> None:
        self.root = Path(root)
        self.cfg = cfg or ConfigSchema()
        self.adapter = adapter or DsFolderAdapter()
        self.messages = messages if messages is not None else MessageLog()
        self.dry_run = dry_run
        self.audit = audit
        self.store = SidecarStore(self.root, messages=self.messages, dry_run=dry_run)
        self._trail: Optional[AuditTrail] = None

    # ------------------------------------------------------------------ #
    # Audit bookkeeping
    # ------------------------------------------------------------------ #
    @contextmanager
    def _run(self) -> Iterator[None]:
        """Bind one audit table to the outermost public call."""
        owner = self._trail is None and self.audit
        if owner:
            self._trail = AuditTrail(
                self.root, self.cfg.audit_folder, "rename", dry_run=self.dry_run
            )
        try:
            yield
        finally:
            if owner:
                self._trail = None

    @contextmanager
    def _audited(self, **row) -> Iterator[None]:
        """Record *row* as planned, then as done or failed."""
        trail = self._trail
        idx = trail.add(**row) if trail is not None else None
        if trail is not None:
            trail.save()
        try:
            yield
        except Exception:
            if idx is not None:
                trail.update(idx, status="failed")
            raise
        else:
            if idx is not None:
                trail.update(idx, status="done")
        finally:
            if trail is not None:
                trail.save()

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _subject_dir(self, subject: str | Path) -> Path:
        if isinstance(subject, Path) or "/" in str(subject):
            path = Path(subject)
            path = path if path.is_absolute() else self.root / path
        else:
            path = self.root / f"sub-{clean_label(subject, 'sub')}"
        if not path.is_dir():
            raise UsageError(f"Subject folder not found: {path}")
        return path

    @staticmethod
    def _matching_dirs(parent: Path, rule: LabelRename) -> List[Path]:
        return [
            d for d in sorted(parent.iterdir()) if d.is_dir() and rule.folder_re.fullmatch(d.name)
        ]

    def _move_recording(self, path: Path, new_name: str) -> Path:
        self.messages.info(
            f"Rename recording {self.store.rel(path)} -> {new_name}", dry_run=self.dry_run
        )
        return self.adapter.rewrite_identifier_and_date(path, new_name, dry_run=self.dry_run)

    # ------------------------------------------------------------------ #
    # Tree rename (steps 1-4)
    # ------------------------------------------------------------------ #
    def _rename_tree(self, scope: Path, rule: LabelRename, *, include_scope: bool) -> Path:
        """Apply *rule* to every name under *scope*; return the final scope path."""
        ext = self.cfg.layout.extension

        # 1. recordings, which carry embedded identifiers
        moved: Set[Path] = set()
        for path in sorted(scope.rglob(f"*{ext}")):
            if rule.name_re.search(path.name) and not any(m in path.parents for m in moved):
                self._move_recording(path, rule.in_name(path.name))
                moved.add(path)

        # 2. remaining files
        for path in sorted(p for p in scope.rglob("*") if p.is_file()):
            if self.dry_run and any(m in path.parents for m in moved):
                continue
            if rule.name_re.search(path.name):
                self.store.move(path, path.with_name(rule.in_name(path.name)))

        # 3. directories, deepest first
        dirs = [p for p in scope.rglob("*") if p.is_dir()]
        if include_scope:
            dirs.append(scope)
        final_scope = scope
        for path in sorted(dirs, key=lambda p: len(p.parts), reverse=True):
            if self.dry_run and path in moved:
                continue
            new = rule.folder(path.name)
            if new is None and rule.name_re.search(path.name):
                new = rule.in_name(path.name)
            if not new or new == path.name:
                continue
            target = path.with_name(new)
            if target.exists():
                raise ConsistencyError(f"Cannot rename {self.store.rel(path)}: {target.name} exists")
            self.store.move(path, target)
            if path == scope:
                final_scope = target

        # 4. scan-index content
        search_scope = scope if self.dry_run else final_scope
        locate = rule.name_re if self.dry_run else rule.new_name_re
        for path in sorted(search_scope.rglob("*_scans.tsv")):
            if not locate.search(path.name):
                continue
            text = path.read_text(encoding="utf-8")
            new_text = rule.in_name(text)
            if new_text != text:
                target = path if not self.dry_run else path.with_name(rule.in_name(path.name))
                if self.dry_run:
                    self.messages.change(
                        f"Update {self.store.rel(target)}", [], dry_run=True
                    )
                else:
                    self.store.write_text(target, new_text)
        return final_scope

    # ------------------------------------------------------------------ #
    # Step 5 – cross references
    # ------------------------------------------------------------------ #
    def _rewrite_references(
        self,
        tree_root: Path,
        transform: Callable[[str], str],
        in_scope: Callable[[str], bool],
        leftover: Optional[Callable[[str], bool]] = None,
    ) -> int:
        """Rewrite cross-reference fields in every JSON sidecar of *tree_root*.

        Returns:
            Number of documents changed.
        """
        changed_docs = 0
        for path in sorted(tree_root.glob("sub-*/**/*.json")):
            if not path.is_file():
                continue
            doc = SidecarStore.read_json(path)
            if not isinstance(doc, dict):
                continue
            changed = False
            for field in self.cfg.cross_references:
                if field not in doc:
                    continue
                value = doc[field]
                values = value if isinstance(value, list) else [value]
                out = []
                for item in values:
                    if isinstance(item, str) and in_scope(item):
                        new_item = transform(item)
                        if leftover is not None and leftover(new_item):
                            self.messages.warn(
                                f"{field} in {self.store.rel(path)} ({new_item}) could not "
                                "be rewritten reliably; run a rebuild to refresh it.",
                                path=self.store.rel(path),
                            )
                        changed = changed or new_item != item
                        out.append(new_item)
                    else:
                        out.append(item)
                doc[field] = out if isinstance(value, list) else out[0]
            if changed:
                self.store.write_json(path, doc)
                changed_docs += 1
        return changed_docs

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #
    def _rename_session_in(self, subject_dir: Path, rule: LabelRename, *, mirror: bool) -> bool:
        matches = self._matching_dirs(subject_dir, rule)
        if not matches:
            if mirror:
                log.debug("[rename] no ses-%s in %s", rule.old, subject_dir)
            else:
                self.messages.warn(
                    f"No session matching '{rule.old}' in {self.store.rel(subject_dir)}; nothing renamed.",
                    subject=subject_dir.name,
                )
            return False
        if len(matches) > 1:
            raise ConsistencyError(
                f"Several sessions match '{rule.old}' in {self.store.rel(subject_dir)}: "
                + ", ".join(m.name for m in matches)
            )
        source = matches[0]
        target = subject_dir / rule.folder(source.name)
        if target.exists():
            raise ConsistencyError(
                f"Cannot rename {self.store.rel(source)}: {self.store.rel(target)} already exists"
            )

        subject_label = subject_dir.name[len("sub-"):]
        owner = re.compile(rf"(^|/)sub-{re.escape(subject_label)}(/|_)")
        with self._audited(
            entity="session",
            tree=self.store.rel(subject_dir.parent) or ".",
            subject=subject_dir.name,
            old=source.name,
            new=target.name,
        ):
            self._rename_tree(subject_dir, rule, include_scope=False)
            self._rewrite_references(
                subject_dir.parent,
                rule.rewrite_path,
                lambda s: bool(owner.search(s)) and rule.mentions(s),
                rule.leftover,
            )
        log.info("[rename] %s/%s -> %s", subject_dir.name, source.name, target.name)
        return True

    def rename_session(
        self, subject: str | Path, old: str, new: str, *, full: bool = False
    ) -> bool:
        """Rename one session of a subject, then its sub-dataset mirrors.

        Args:
            subject: Subject label or folder.
            old: Old session label (or substring in partial mode).
            new: New label (or replacement substring).
            full: Match whole labels only.

        Returns:
            ``False`` when no session matched (nothing done).

        Raises:
            UsageError: Invalid labels or subject.
            ConsistencyError: Several sessions match, or the target exists.
        """
        subject_dir = self._subject_dir(subject)
        rule = LabelRename("ses", old, new, full)
        with self._run():
            if not self._rename_session_in(subject_dir, rule, mirror=False):
                return False
            for name in self.cfg.sub_datasets:
                mirror = subject_dir.parent / name / subject_dir.name
                if mirror.is_dir():
                    self._rename_session_in(mirror, rule, mirror=True)
        return True

    def free_label(self, subject: str | Path, base: str) -> str:
        """Return *base*, or *base* plus a counter, unused as a session of *subject*."""
        subject_dir = self._subject_dir(subject)
        label, n = base, 2
        while (subject_dir / f"ses-{label}").exists():
            label = f"{base}{n}"
            n += 1
        return label

    def rename_with_collision_avoidance(
        self, subject: str | Path, old: str, new: str
    ) -> Dict[str, str]:
        """Full-mode rename; a session already called *new* is moved aside first.

        Returns:
            ``{new: temporary}`` when the occupying session was moved, else ``{}``.
        """
        subject_dir = self._subject_dir(subject)
        moved: Dict[str, str] = {}
        with self._run():
            if (subject_dir / f"ses-{new}").exists() and old != new:
                temp = self.free_label(subject_dir, new + self.cfg.merge.temp_suffix)
                self.rename_session(subject_dir, new, temp, full=True)
                moved[new] = temp
            self.rename_session(subject_dir, old, new, full=True)
        return moved

    def swap_sessions(self, subject: str | Path, first: str, second: str) -> None:
        """Exchange two session labels through a temporary label."""
        subject_dir = self._subject_dir(subject)
        for label in (first, second):
            if not (subject_dir / f"ses-{label}").is_dir():
                raise UsageError(f"{subject_dir.name} has no ses-{label}")
        with self._run(), self._audited(
            entity="swap", subject=subject_dir.name, old=first, new=second
        ):
            moved = self.rename_with_collision_avoidance(subject_dir, first, second)
            self.rename_session(subject_dir, moved[second], first, full=True)

    # ------------------------------------------------------------------ #
    # Subjects
    # ------------------------------------------------------------------ #
    def _rename_subject_in(self, tree_root: Path, rule: LabelRename, *, mirror: bool) -> bool:
        matches = self._matching_dirs(tree_root, rule) if tree_root.is_dir() else []
        if not matches:
            if not mirror:
                self.messages.warn(
                    f"No subject matching '{rule.old}' in {self.store.rel(tree_root) or '.'}; nothing renamed."
                )
            return False
        if len(matches) > 1:
            raise ConsistencyError(
                "Several subjects match '%s': %s" % (rule.old, ", ".join(m.name for m in matches))
            )
        source = matches[0]
        target = tree_root / rule.folder(source.name)
        if target.exists():
            raise ConsistencyError(
                f"Cannot rename {self.store.rel(source)}: {self.store.rel(target)} already exists"
            )
        with self._audited(
            entity="subject",
            tree=self.store.rel(tree_root) or ".",
            subject=source.name,
            old=source.name,
            new=target.name,
        ):
            self._rename_tree(source, rule, include_scope=True)
            self._rewrite_references(tree_root, rule.rewrite_path, rule.mentions, rule.leftover)
        log.info("[rename] %s -> %s in %s", source.name, target.name, tree_root)
        return True

    def _rename_participants(self, rule: LabelRename) -> None:
        path = self.root / "participants.tsv"
        table = self.store.read_table(path)
        if table is None or "participant_id" not in table.columns:
            return
        renamed = table["participant_id"].map(lambda v: rule.folder(v) or v)
        if renamed.duplicated().any():
            raise ConsistencyError("participants.tsv would list a participant twice")
        if not renamed.equals(table["participant_id"]):
            table["participant_id"] = renamed
            self.store.write_table(path, table)

    def rename_subject(self, old: str, new: str, *, full: bool = False) -> bool:
        """Rename a subject across the dataset, its mirrors, participants and ledger.

        Returns:
            ``False`` when no subject matched.
        """
        rule = LabelRename("sub", clean_label(old), clean_label(new), full)
        with self._run():
            if not self._rename_subject_in(self.root, rule, mirror=False):
                return False
            for name in self.cfg.sub_datasets:
                self._rename_subject_in(self.root / name, rule, mirror=True)
            self._rename_participants(rule)
            with ShiftLedger.open(self.root, self.cfg, dry_run=self.dry_run) as ledger:
                for pid in ledger.rename(rule.rewrite_path):
                    self.messages.info(f"Shift ledger row {pid} renamed", dry_run=self.dry_run)
        return True

    def rename_subjects_from_table(self, table: Path | pd.DataFrame) -> List[str]:
        """Batch full-mode subject renames from a two-column (old, new) table.

        When a new label is already used, every subject first moves to a
        temporary label so the batch can permute labels freely.

        Returns:
            New labels of the subjects actually renamed.
        """
        if not isinstance(table, pd.DataFrame):
            table = pd.read_csv(table, dtype=str, sep=None, engine="python")
        if table.shape[1] < 2:
            raise UsageError("Rename table needs two columns: old and new subject labels")
        pairs = [
            (clean_label(o), clean_label(n))
            for o, n in zip(table.iloc[:, 0], table.iloc[:, 1])
            if isinstance(o, str) and isinstance(n, str) and clean_label(o) != clean_label(n)
        ]
        olds = [o for o, _ in pairs]
        news = [n for _, n in pairs]
        if len(set(olds)) != len(olds) or len(set(news)) != len(news):
            raise UsageError("Rename table lists a subject label more than once")

        existing = {p.name[len("sub-"):] for p in self.root.glob("sub-*") if p.is_dir()}
        if set(news) & existing:
            temps = []
            for old in olds:
                temp = old + self.cfg.merge.temp_suffix
                while temp in existing or temp in news:
                    temp += self.cfg.merge.temp_suffix
                existing.add(temp)
                temps.append(temp)
            staged = [(o, t) for o, t in zip(olds, temps)] + [(t, n) for t, n in zip(temps, news)]
        else:
            staged = pairs

        done: List[str] = []
        with self._run(), self._audited(
            entity="subjects", subject="*", old=",".join(olds), new=",".join(news)
        ):
            for old, new in staged:
                if self.rename_subject(old, new, full=True) and new in news:
                    done.append(new)
        return done

    # ------------------------------------------------------------------ #
    # Single recording (used by rebuilds)
    # ------------------------------------------------------------------ #
    def rename_recording(
        self, rec: Recording, new: RecordingName, scans: Optional[pd.DataFrame] = None
    ) -> Path:
        """Move a recording and its own sidecars to the name *new*.

        The scan-index row keeps its timestamp, and references to the
        recording (empty-room associations) follow it.  When the caller
        passes the *scans* frame it already holds for the session, the row is
        renamed in that frame and writing the file is left to the caller.

        Raises:
            ConsistencyError: When a recording called *new* already exists.
        """
        if new.name == rec.path.name:
            return rec.path
        target = rec.path.with_name(new.name)
        if target.exists():
            raise ConsistencyError(f"Cannot rename {rec.name}: {self.store.rel(target)} exists")
        old_rel = rec.relative
        new_rel = Path(old_rel).with_name(new.name).as_posix()

        with self._run(), self._audited(
            entity="recording",
            subject=f"sub-{rec.name.subject}",
            old=rec.name.name,
            new=new.name,
        ):
            new_path = self._move_recording(rec.path, new.name)

            old_prefix = rec.name.prefix + "_"
            for path in sorted(rec.folder.iterdir()):
                rest = path.name[len(old_prefix):]
                if (
                    path.is_file()
                    and path.name.startswith(old_prefix)
                    and "-" not in rest.split(".", 1)[0]
                ):
                    self.store.move(path, path.with_name(f"{new.prefix}_{rest}"))

            owned = scans is None
            if owned:
                scans = SidecarStore.read_scans(rec.scans_file)
            old_row = rec.scans_filename
            hit = scans["filename"] == old_row
            if hit.any():
                scans.loc[hit, "filename"] = Path(old_row).with_name(new.name).as_posix()
                if owned:
                    self.store.write_scans(rec.scans_file, scans)

            self._rewrite_references(
                self.root,
                lambda s: new_rel if s == old_rel else s,
                lambda s: s == old_rel,
            )
        return new_path
