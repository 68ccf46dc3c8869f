from __future__ import annotations

import fcntl
import logging
import os
import re
import shutil
import tempfile
import uuid
from contextlib import AbstractContextManager, contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .errors import AlreadyRunning, DraftNotFound, PipelineStateError
from .models import (
    PIPELINE_STATE_TRANSITIONS,
    CheckResult,
    CheckStatus,
    Draft,
    InflightToken,
    PipelineState,
    VERDICT_STATES,
    TestRun,
    Visibility,
    aggregate_status,
    utc_now,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


@contextmanager
def _locked_file(path: Path, *, missing: Exception | None = None) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar lets the data file itself be replaced with ``os.replace``
    while the lock is held. Locks are not re-entrant: never nest two
    acquisitions of the same path in one process.

    The parent directory is never created here, so a lock taken after the
    directory was removed cannot bring it back.

    Args:
        path: Data file guarded by the lock.
        missing: Raised instead of ``FileNotFoundError`` when the parent
            directory does not exist.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    try:
        lock_handle = lock_path.open("a+", encoding="utf-8")
    except FileNotFoundError:
        if missing is None:
            raise
        raise missing from None
    with lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via temp file, fsync and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing, empty or not UTF-8."""
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def validate_record_id(value: str, *, label: str = "id") -> str:
    """Reject identifiers that are not safe as a single path component."""
    if not _SAFE_ID_RE.match(value) or value in {".", ".."}:
        raise ValueError(f"{label} must match {_SAFE_ID_RE.pattern}, got: {value!r}")
    return value


def new_record_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Draft transaction
# ---------------------------------------------------------------------------


class DraftTransaction:
    """Read-modify-write view of one draft, valid while the draft lock is held."""

    def __init__(self, store: "PipelineStateStore", draft: Draft) -> None:
        self.store = store
        self.draft = draft
        self._dirty = False

    def latest_test_run(self) -> TestRun | None:
        return self.store._latest_test_run_unlocked(self.draft.draft_id)

    def update(self, **changes: Any) -> Draft:
        self.draft = self.draft.model_copy(update={**changes, "updated_at": utc_now()})
        self._dirty = True
        return self.draft

    def transition(self, new_state: PipelineState, **changes: Any) -> Draft:
        """Move the draft to *new_state* if the pipeline transition table allows it.

        Raises:
            PipelineStateError: If the transition is not allowed.
        """
        current = self.draft.state
        if new_state not in PIPELINE_STATE_TRANSITIONS[current]:
            raise PipelineStateError(
                f"Illegal pipeline transition for {self.draft.draft_id}: {current.value} -> {new_state.value}",
                {"draft_id": self.draft.draft_id, "from": current.value, "to": new_state.value},
            )
        logger.info("Draft %s: %s -> %s", self.draft.draft_id, current.value, new_state.value)
        return self.update(state=new_state, **changes)

    def append_test_run(
        self,
        *,
        sub_competency_id: str,
        results: list[CheckResult],
    ) -> TestRun:
        """Persist a new TestRun for the draft's current artifact.

        The sequence number is one past the latest stored run, so history is
        totally ordered. Existing runs are never rewritten.
        """
        if not self.draft.artifact_fingerprint:
            raise PipelineStateError(
                f"Draft {self.draft.draft_id} has no artifact to certify", {"draft_id": self.draft.draft_id}
            )
        latest = self.latest_test_run()
        test_run = TestRun(
            test_run_id=new_record_id("TR"),
            draft_id=self.draft.draft_id,
            sequence=(latest.sequence + 1) if latest is not None else 1,
            artifact_fingerprint=self.draft.artifact_fingerprint,
            artifact_revision=self.draft.artifact_revision,
            sub_competency_id=sub_competency_id,
            results=results,
            status=aggregate_status(results),
        )
        path = self.store.test_run_path(self.draft.draft_id, test_run.sequence)
        if path.exists():
            raise ValueError(f"TestRun already exists: {path}")
        _atomic_write_text(path, test_run.model_dump_json(indent=2))
        return test_run

    def withdraw_publication(self, reason: str) -> None:
        """Return a published draft to unpublished; the public code is kept."""
        if self.draft.visibility != Visibility.PUBLISHED:
            return
        logger.warning("Draft %s withdrawn from publication: %s", self.draft.draft_id, reason)
        self.update(visibility=Visibility.UNPUBLISHED, certified_test_run_id=None)


# ---------------------------------------------------------------------------
# PipelineStateStore
# ---------------------------------------------------------------------------


class PipelineStateStore:
    """Filesystem storage for drafts, their TestRun history and in-flight tokens.

    Every write is an atomic temp-file-then-rename. Draft read-modify-write
    and TestRun appends share one ``fcntl`` lock per draft, so a publish
    decision and a concurrently recorded TestRun are serialized even across
    processes.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.drafts_dir = self.root / "drafts"
        self.public_codes_dir = self.root / "public_codes"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.drafts_dir, self.public_codes_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def draft_dir(self, draft_id: str) -> Path:
        return self.drafts_dir / validate_record_id(draft_id, label="draft_id")

    def draft_path(self, draft_id: str) -> Path:
        return self.draft_dir(draft_id) / "draft.json"

    def test_runs_dir(self, draft_id: str) -> Path:
        return self.draft_dir(draft_id) / "test_runs"

    def test_run_path(self, draft_id: str, sequence: int) -> Path:
        return self.test_runs_dir(draft_id) / f"{sequence:06d}.json"

    def inflight_path(self, draft_id: str) -> Path:
        return self.draft_dir(draft_id) / "inflight.json"

    def _draft_lock(self, draft_id: str, path: Path) -> AbstractContextManager[None]:
        """Lock *path* inside the draft's directory; DraftNotFound once the draft is gone."""
        return _locked_file(path, missing=DraftNotFound(f"Draft not found: {draft_id}", {"draft_id": draft_id}))

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_draft(self, draft: Draft) -> Path:
        """Persist a brand-new draft.

        Raises:
            ValueError: If a draft with this ID already exists.
        """
        path = self.draft_path(draft.draft_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"Draft already exists: {draft.draft_id}")
            _atomic_write_text(path, draft.model_dump_json(indent=2))
        return path

    def _read_draft_unlocked(self, draft_id: str) -> Draft:
        path = self.draft_path(draft_id)
        if not path.is_file():
            raise DraftNotFound(f"Draft not found: {draft_id}", {"draft_id": draft_id})
        text = _safe_read_json(path, f"draft {draft_id}")
        try:
            return Draft.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"draft {draft_id} at {path} failed validation: {exc}") from exc

    def read_draft(self, draft_id: str) -> Draft:
        """Read a draft under its lock.

        Raises:
            DraftNotFound: If the draft does not exist.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self.draft_path(draft_id)
        if not path.is_file():
            raise DraftNotFound(f"Draft not found: {draft_id}", {"draft_id": draft_id})
        with self._draft_lock(draft_id, path):
            return self._read_draft_unlocked(draft_id)

    def list_drafts(self, *, author_id: str | None = None) -> list[Draft]:
        drafts: list[Draft] = []
        for path in sorted(self.drafts_dir.glob("*/draft.json")):
            draft = self.read_draft(path.parent.name)
            if author_id is None or draft.author_id == author_id:
                drafts.append(draft)
        return drafts

    @contextmanager
    def draft_transaction(self, draft_id: str) -> Iterator[DraftTransaction]:
        """Lock a draft for a read-modify-write.

        Changes made through the yielded transaction are written when the
        block exits normally and discarded if it raises.
        """
        path = self.draft_path(draft_id)
        if not path.is_file():
            raise DraftNotFound(f"Draft not found: {draft_id}", {"draft_id": draft_id})
        with self._draft_lock(draft_id, path):
            txn = DraftTransaction(self, self._read_draft_unlocked(draft_id))
            yield txn
            if txn._dirty:
                _atomic_write_text(path, txn.draft.model_dump_json(indent=2))

    def transition_draft(self, draft_id: str, new_state: PipelineState, **changes: Any) -> Draft:
        with self.draft_transaction(draft_id) as txn:
            return txn.transition(new_state, **changes)

    def update_draft(self, draft_id: str, **changes: Any) -> Draft:
        with self.draft_transaction(draft_id) as txn:
            return txn.update(**changes)

    def delete_draft(self, draft_id: str) -> None:
        """Remove a draft, its TestRun history and its public-code claim.

        Runs under the draft lock, so a transaction waiting on that lock
        sees the draft gone and raises ``DraftNotFound``.
        """
        path = self.draft_path(draft_id)
        if not path.is_file():
            raise DraftNotFound(f"Draft not found: {draft_id}", {"draft_id": draft_id})
        with self._draft_lock(draft_id, path):
            draft = self._read_draft_unlocked(draft_id)
            if draft.public_code:
                code_path = self.public_codes_dir / f"{draft.public_code}.txt"
                try:
                    code_path.unlink()
                except FileNotFoundError:
                    pass
            shutil.rmtree(self.draft_dir(draft_id))
        logger.info("Draft %s deleted", draft_id)

    # ------------------------------------------------------------------
    # TestRuns (append-only)
    # ------------------------------------------------------------------

    def _read_test_run(self, path: Path) -> TestRun:
        text = _safe_read_json(path, "test run")
        try:
            return TestRun.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"test run at {path} failed validation: {exc}") from exc

    def _test_run_paths(self, draft_id: str) -> list[Path]:
        directory = self.test_runs_dir(draft_id)
        if not directory.is_dir():
            return []
        return sorted(directory.glob("[0-9]*.json"))

    def _latest_test_run_unlocked(self, draft_id: str) -> TestRun | None:
        paths = self._test_run_paths(draft_id)
        return self._read_test_run(paths[-1]) if paths else None

    def list_test_runs(self, draft_id: str) -> list[TestRun]:
        """Return the draft's TestRuns, oldest first."""
        self.read_draft(draft_id)
        return [self._read_test_run(path) for path in self._test_run_paths(draft_id)]

    def latest_test_run(self, draft_id: str) -> TestRun | None:
        path = self.draft_path(draft_id)
        if not path.is_file():
            raise DraftNotFound(f"Draft not found: {draft_id}", {"draft_id": draft_id})
        with self._draft_lock(draft_id, path):
            return self._latest_test_run_unlocked(draft_id)

    def record_test_run(
        self,
        draft_id: str,
        *,
        sub_competency_id: str,
        results: list[CheckResult],
    ) -> TestRun:
        """Append a TestRun and move the draft to the matching verdict state in one locked step.

        Raises:
            PipelineStateError: If the draft is not currently in ``testing``.
        """
        with self.draft_transaction(draft_id) as txn:
            if txn.draft.state != PipelineState.TESTING:
                raise PipelineStateError(
                    f"Draft {draft_id} is {txn.draft.state.value}, not testing; test results discarded",
                    {"draft_id": draft_id, "state": txn.draft.state.value},
                )
            test_run = txn.append_test_run(sub_competency_id=sub_competency_id, results=results)
            if test_run.status != CheckStatus.PASSED:
                txn.withdraw_publication(f"latest test run {test_run.test_run_id} is {test_run.status.value}")
            elif txn.draft.is_published:
                txn.update(certified_test_run_id=test_run.test_run_id)
            txn.transition(VERDICT_STATES[test_run.status], last_error=None)
        return test_run

    # ------------------------------------------------------------------
    # In-flight tokens
    # ------------------------------------------------------------------

    def _read_inflight_unlocked(self, path: Path) -> InflightToken | None:
        if not path.is_file():
            return None
        try:
            return InflightToken.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, UnicodeDecodeError):
            logger.warning("Ignoring unreadable in-flight token at %s", path)
            return None

    @staticmethod
    def _is_live(token: InflightToken, lease_seconds: int) -> bool:
        return utc_now() - token.acquired_at < timedelta(seconds=lease_seconds)

    def read_inflight(self, draft_id: str) -> InflightToken | None:
        """Return the token on the draft's in-flight slot, expired or not."""
        path = self.inflight_path(draft_id)
        try:
            with self._draft_lock(draft_id, path):
                return self._read_inflight_unlocked(path)
        except DraftNotFound:
            return None

    def live_inflight(self, draft_id: str, *, lease_seconds: int) -> InflightToken | None:
        """Return the in-flight token only while its lease has not run out.

        A token past its lease belongs to an abandoned run and does not
        block anything; the next ``acquire_inflight`` reclaims it.
        """
        holder = self.read_inflight(draft_id)
        if holder is None or not self._is_live(holder, lease_seconds):
            return None
        return holder

    def acquire_inflight(self, draft_id: str, operation: str, *, lease_seconds: int) -> tuple[InflightToken, bool]:
        """Claim the draft's single in-flight slot.

        A token older than *lease_seconds* belongs to an abandoned run and is
        reclaimed.

        Returns:
            The new token and whether an abandoned token was reclaimed.

        Raises:
            DraftNotFound: If the draft does not exist.
            AlreadyRunning: If another live run holds the slot.
        """
        if not self.draft_path(draft_id).is_file():
            raise DraftNotFound(f"Draft not found: {draft_id}", {"draft_id": draft_id})
        path = self.inflight_path(draft_id)
        with self._draft_lock(draft_id, path):
            holder = self._read_inflight_unlocked(path)
            reclaimed = False
            if holder is not None:
                if self._is_live(holder, lease_seconds):
                    raise AlreadyRunning(
                        f"Draft {draft_id} is already running {holder.operation}",
                        {"draft_id": draft_id, "operation": holder.operation},
                    )
                logger.warning(
                    "Reclaiming abandoned %s token on draft %s (acquired %s)",
                    holder.operation,
                    draft_id,
                    holder.acquired_at.isoformat(),
                )
                reclaimed = True
            elif path.exists():
                reclaimed = True
            token = InflightToken(draft_id=draft_id, operation=operation, token=uuid.uuid4().hex)
            _atomic_write_text(path, token.model_dump_json())
        return token, reclaimed

    def release_inflight(self, token: InflightToken) -> bool:
        """Release *token* if it still owns the slot. Returns whether it did."""
        path = self.inflight_path(token.draft_id)
        try:
            with self._draft_lock(token.draft_id, path):
                holder = self._read_inflight_unlocked(path)
                if holder is None or holder.token != token.token:
                    return False
                path.unlink()
        except DraftNotFound:
            return False
        return True

    # ------------------------------------------------------------------
    # Public codes
    # ------------------------------------------------------------------

    def claim_public_code(self, code: str, draft_id: str) -> bool:
        """Reserve *code* for *draft_id*; False if another draft already holds it."""
        path = self.public_codes_dir / f"{validate_record_id(code, label='public_code')}.txt"
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return path.read_text(encoding="utf-8").strip() == draft_id
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{draft_id}\n")
        return True

    def resolve_public_code(self, code: str) -> str | None:
        path = self.public_codes_dir / f"{validate_record_id(code, label='public_code')}.txt"
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8").strip() or None
