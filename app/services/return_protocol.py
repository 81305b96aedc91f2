import logging
from typing import Any, Dict, List, Optional

from app.schemas.damage import (
    ConfirmReturnRequest,
    DamageAssessment,
    DamageFace,
    DamageObservation,
    FaceImage,
    ReturnPreview,
)
from app.services.damage_scoring import policy_table, score_damage
from app.services.platform_client import (
    MaterialNotFoundError,
    PlatformAPIError,
    PlatformClient,
    PlatformError,
    PlatformNetworkError,
    PlatformNotFoundError,
    UNSTABLE_CONNECTION_MESSAGE,
)

logger = logging.getLogger(__name__)

AMBIGUOUS_SUBMIT_MESSAGE = (
    "The connection dropped after the return was sent and it may already be recorded. "
    "Check the transaction status before submitting again."
)

_UNSET = object()


class ReturnProtocolError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ReturnValidationError(ReturnProtocolError):
    pass


class ReturnSequenceError(ReturnProtocolError):
    """Step called out of order (no session, or confirm before check)."""


class StaleReturnResponseError(ReturnProtocolError):
    """A check answer arrived for a session that is no longer current."""


class ReturnConnectionError(ReturnProtocolError):
    pass


class AmbiguousReturnSubmitError(ReturnProtocolError):
    pass


class ReturnRejectedError(ReturnProtocolError):
    """The server refused the step; message is passed through as-is."""


class ReturnSession:
    """Form state for one returned item: six faces, a note and the check answer."""

    def __init__(self, serial_number: str, generation: int):
        self.serial_number = serial_number
        self.generation = generation
        self.note: Optional[str] = None
        self.observations: Dict[DamageFace, DamageObservation] = {
            face: DamageObservation(face=face) for face in DamageFace
        }
        self.assessment = DamageAssessment()
        self.preview: Optional[ReturnPreview] = None
        # "check" or "confirm" while that call is waiting on the platform
        self.in_flight: Optional[str] = None

    def damage_faces(self) -> List[Dict[str, Any]]:
        return [
            {"face": obs.face.value, "issue": obs.issue}
            for obs in self.observations.values()
            if obs.has_issue
        ]


class ReturnFlow:
    """Check-then-confirm return submission against the platform.

    Phase 1 (`check`) uploads the photos and lets the server score them.
    Phase 2 (`confirm`) submits exactly what phase 1 returned: the server's
    points and condition plus the uploaded image URLs, so nothing is uploaded
    twice. Each new session bumps a generation counter and answers for older
    generations are dropped.
    """

    def __init__(self, client: PlatformClient):
        self._client = client
        self._policy: Optional[Dict[str, float]] = None
        self._generation = 0
        self.session: Optional[ReturnSession] = None

    @property
    def policy(self) -> Dict[str, float]:
        return self._policy or {}

    async def ensure_policy(self) -> Dict[str, float]:
        """Load the damage policy once; failures leave the preview at zero points."""
        if self._policy is not None:
            return self._policy
        try:
            entries = await self._client.get_damage_policy()
        except PlatformNotFoundError:
            logger.debug("Damage policy not found, local preview disabled")
            return {}
        except PlatformError as e:
            logger.warning(f"Could not load damage policy: {e.message}")
            return {}
        self._policy = policy_table(entries)
        logger.info(f"Damage policy loaded: {len(self._policy)} issue types")
        if self.session:
            self._rescore(self.session)
        return self._policy

    def begin(self, serial_number: str) -> ReturnSession:
        serial_number = (serial_number or "").strip()
        if not serial_number:
            raise ReturnValidationError("Serial number is required.")
        self._generation += 1
        self.session = ReturnSession(serial_number, self._generation)
        self._rescore(self.session)
        logger.info(f"Return session {self._generation} started for {serial_number}")
        return self.session

    def abandon(self):
        if self.session:
            logger.info(f"Return session {self.session.generation} for {self.session.serial_number} abandoned")
        self.session = None

    def require_session(self) -> ReturnSession:
        if self.session is None:
            raise ReturnSequenceError("No return in progress. Scan the returned item first.")
        return self.session

    def update_face(self, face: DamageFace, issue: Any = _UNSET, image: Any = _UNSET) -> ReturnSession:
        session = self.require_session()
        current = session.observations[face]
        changes: Dict[str, Any] = {}
        if issue is not _UNSET:
            changes["issue"] = issue or None
        if image is not _UNSET:
            changes["image"] = image
        session.observations[face] = current.model_copy(update=changes)
        # the form changed, so any earlier check answer no longer matches it
        session.preview = None
        self._rescore(session)
        return session

    def set_face_image(self, face: DamageFace, filename: str, content: bytes, content_type: Optional[str] = None) -> ReturnSession:
        image = FaceImage(filename=filename, content=content, content_type=content_type or "image/jpeg")
        return self.update_face(face, image=image)

    def set_note(self, note: Optional[str]) -> ReturnSession:
        session = self.require_session()
        session.note = note or None
        session.preview = None
        return session

    def _rescore(self, session: ReturnSession):
        session.assessment = score_damage(session.observations.values(), self.policy)

    def _claim(self, session: ReturnSession, step: str):
        if session.in_flight:
            raise ReturnSequenceError(f"A {session.in_flight} for this return is still in progress.")
        session.in_flight = step

    async def check(self) -> Optional[ReturnPreview]:
        """Phase 1. Returns None when the server reports the material as unknown."""
        session = self.require_session()
        if not session.serial_number:
            raise ReturnValidationError("Serial number is required.")
        generation = session.generation

        self._claim(session, "check")
        try:
            preview = await self._client.check_return(
                session.serial_number,
                list(session.observations.values()),
                session.note,
            )
        except MaterialNotFoundError:
            logger.warning(f"Material not found while checking {session.serial_number}, ignored")
            return None
        except PlatformNetworkError as e:
            raise ReturnConnectionError(UNSTABLE_CONNECTION_MESSAGE) from e
        except PlatformAPIError as e:
            raise ReturnRejectedError(e.message, e.status_code) from e
        finally:
            session.in_flight = None

        if self.session is not session or generation != self._generation:
            logger.info(f"Dropping check answer for stale return session {generation}")
            raise StaleReturnResponseError("This return was closed before the check finished.")

        session.preview = preview
        logger.info(
            f"Check for {session.serial_number}: {preview.totalDamagePoints} points, "
            f"{preview.finalCondition.value} (local preview: {session.assessment.totalPoints}, "
            f"{session.assessment.condition.value})"
        )
        return preview

    async def confirm(self) -> Any:
        """Phase 2. Never retried automatically; see AMBIGUOUS_SUBMIT_MESSAGE."""
        session = self.require_session()
        preview = session.preview
        if preview is None:
            raise ReturnSequenceError("Check the returned item before confirming.")

        request = ConfirmReturnRequest(
            note=session.note if session.note is not None else preview.note,
            damageFaces=preview.damageFaces if preview.damageFaces is not None else session.damage_faces(),
            tempImages=preview.tempImages,
            totalDamagePoints=preview.totalDamagePoints,
            finalCondition=preview.finalCondition,
        )
        self._claim(session, "confirm")
        try:
            result = await self._client.confirm_return(session.serial_number, request)
        except PlatformNetworkError as e:
            if e.request_sent:
                logger.error(f"Confirm return for {session.serial_number} has unknown outcome")
                raise AmbiguousReturnSubmitError(AMBIGUOUS_SUBMIT_MESSAGE) from e
            raise ReturnConnectionError(UNSTABLE_CONNECTION_MESSAGE) from e
        except PlatformAPIError as e:
            raise ReturnRejectedError(e.message, e.status_code) from e
        finally:
            session.in_flight = None

        logger.info(f"Return confirmed for {session.serial_number}")
        if self.session is session:
            self.session = None
        return result
