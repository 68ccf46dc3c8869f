from __future__ import annotations

import logging
import secrets
import string
from typing import Callable

from .errors import AlreadyRunning, NotAuthorized, NotCertified, StaleCertification
from .models import CheckStatus, Draft, Visibility, utc_now
from .settings import RuntimeSettings
from .state_store import PipelineStateStore

logger = logging.getLogger(__name__)

PUBLIC_CODE_ALPHABET = string.digits + string.ascii_uppercase
PUBLIC_CODE_LENGTH = 8
_MAX_CODE_ATTEMPTS = 16


def generate_public_code() -> str:
    """Draw a random public code.

    Returns:
        ``PUBLIC_CODE_LENGTH`` characters from ``PUBLIC_CODE_ALPHABET``, drawn
        with ``secrets`` so codes cannot be guessed from earlier ones.
    """
    return "".join(secrets.choice(PUBLIC_CODE_ALPHABET) for _ in range(PUBLIC_CODE_LENGTH))


class PublicationGate:
    """The only writer allowed to set ``visibility = published``.

    The latest TestRun is read inside the same draft lock that performs the
    write, so a TestRun recorded concurrently is either seen or ordered after
    the publish.
    """

    def __init__(
        self,
        store: PipelineStateStore,
        *,
        code_factory: Callable[[], str] = generate_public_code,
        lease_seconds: int = RuntimeSettings.inflight_lease_seconds,
    ) -> None:
        self.store = store
        self.code_factory = code_factory
        self.lease_seconds = lease_seconds

    def _claim_code(self, draft_id: str) -> str:
        for _ in range(_MAX_CODE_ATTEMPTS):
            code = self.code_factory()
            if self.store.claim_public_code(code, draft_id):
                return code
            logger.debug("Public code collision on %s; drawing again", code)
        raise RuntimeError(f"Could not allocate a unique public code for draft {draft_id}")

    def publish(self, draft_id: str) -> Draft:
        """Publish the draft's certified artifact.

        Idempotent: an already-published draft whose artifact is still the
        certified one is returned unchanged.

        Raises:
            DraftNotFound: If the draft does not exist.
            AlreadyRunning: If a generation or test run holds a live token.
            NotCertified: If there is no TestRun or the latest is not ``passed``.
            StaleCertification: If the artifact changed after the passing run.
        """
        holder = self.store.live_inflight(draft_id, lease_seconds=self.lease_seconds)
        if holder is not None:
            raise AlreadyRunning(
                f"Draft {draft_id} is running {holder.operation}",
                {"draft_id": draft_id, "operation": holder.operation},
            )
        with self.store.draft_transaction(draft_id) as txn:
            draft = txn.draft
            latest = txn.latest_test_run()
            if latest is None:
                raise NotCertified(f"Draft {draft_id} has never been tested", {"draft_id": draft_id})
            if latest.status != CheckStatus.PASSED:
                raise NotCertified(
                    f"Latest test run for draft {draft_id} is {latest.status.value}",
                    {"draft_id": draft_id, "test_run_id": latest.test_run_id, "status": latest.status.value},
                )
            if (
                latest.artifact_fingerprint != draft.artifact_fingerprint
                or latest.artifact_revision != draft.artifact_revision
            ):
                raise StaleCertification(
                    f"Draft {draft_id} artifact changed after test run {latest.test_run_id}",
                    {
                        "draft_id": draft_id,
                        "certified_revision": latest.artifact_revision,
                        "current_revision": draft.artifact_revision,
                    },
                )
            if draft.is_published and draft.certified_test_run_id == latest.test_run_id:
                logger.debug("Draft %s already published with code %s", draft_id, draft.public_code)
                return draft

            code = draft.public_code or self._claim_code(draft_id)
            published = txn.update(
                visibility=Visibility.PUBLISHED,
                public_code=code,
                published_at=draft.published_at or utc_now(),
                certified_test_run_id=latest.test_run_id,
            )
        logger.info("Draft %s published as %s (test run %s)", draft_id, code, latest.test_run_id)
        return published

    def unpublish(self, draft_id: str, author_id: str) -> Draft:
        """Take a draft out of public view; its public code stays reserved."""
        with self.store.draft_transaction(draft_id) as txn:
            if txn.draft.author_id != author_id:
                raise NotAuthorized(
                    f"Author {author_id} does not own draft {draft_id}", {"draft_id": draft_id}
                )
            if txn.draft.visibility == Visibility.UNPUBLISHED:
                return txn.draft
            draft = txn.update(visibility=Visibility.UNPUBLISHED, certified_test_run_id=None)
        logger.info("Draft %s unpublished", draft_id)
        return draft
