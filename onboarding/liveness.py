"""
Liveness Orchestrator - opens and closes the challenge sub-flow and keeps its result.

The challenge runner itself is opaque: an async callable that receives the
challenge sequence and returns the challenges the subject completed.
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional

from config.document_schema import LivenessResult


logger = logging.getLogger(__name__)


class LivenessChallenge(str, Enum):
    CENTER = "center"
    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"
    BLINK = "blink"
    SMILE = "smile"

    @property
    def instruction(self) -> str:
        return CHALLENGE_INSTRUCTIONS[self]


CHALLENGE_INSTRUCTIONS = {
    LivenessChallenge.CENTER: "Look straight at the camera",
    LivenessChallenge.TURN_LEFT: "Slowly turn your head to the left",
    LivenessChallenge.TURN_RIGHT: "Slowly turn your head to the right",
    LivenessChallenge.BLINK: "Blink your eyes",
    LivenessChallenge.SMILE: "Smile",
}

DEFAULT_CHALLENGES: List[LivenessChallenge] = list(LivenessChallenge)

ChallengeRunner = Callable[[List[LivenessChallenge]], Awaitable[Iterable[LivenessChallenge]]]


def score_challenges(completed: int, total: int) -> LivenessResult:
    """One missed challenge is tolerated."""
    total = max(total, 0)
    completed = max(0, min(completed, total))
    score = round(completed / total * 100) if total else 0
    return LivenessResult(
        passed=total > 0 and completed >= total - 1,
        score=score,
        completed_challenges=completed,
        total_challenges=total,
    )


class LivenessOrchestrator:
    """
    open() starts a session; on_complete() stores the result for that session;
    on_cancel() closes without storing. Re-opening after a failure discards
    nothing until the new session completes: the last completed result wins.
    """

    def __init__(self, runner: Optional[ChallengeRunner] = None, challenges: Optional[List[LivenessChallenge]] = None):
        self.runner = runner
        self.challenges = list(challenges or DEFAULT_CHALLENGES)
        self.result: Optional[LivenessResult] = None
        self.is_open = False
        self._session = 0

    @property
    def passed(self) -> bool:
        return self.result is not None and self.result.passed

    def open(self) -> int:
        """Show the challenge sub-flow; returns the session id."""
        self._session += 1
        self.is_open = True
        logger.debug(f"[Liveness] Session {self._session} opened")
        return self._session

    def on_complete(self, result: LivenessResult, session: Optional[int] = None) -> bool:
        """
        Store a completed result and close.
        Results for a cancelled or superseded session are ignored.
        """
        if not self.is_open or (session is not None and session != self._session):
            logger.debug(f"[Liveness] Ignoring late result for session {session}")
            return False
        self.result = result
        self.is_open = False
        logger.info(
            f"[Liveness] passed={result.passed} score={result.score} "
            f"({result.completed_challenges}/{result.total_challenges})"
        )
        return True

    def on_cancel(self) -> None:
        self.is_open = False
        self._session += 1

    async def run(self) -> Optional[LivenessResult]:
        """
        Open, drive the runner through the challenge sequence, and complete.
        A runner failure is stored as a failed result (score 0); re-run to retry.
        """
        if self.runner is None:
            raise RuntimeError("No liveness challenge runner configured")

        session = self.open()
        try:
            completed = list(await self.runner(list(self.challenges)))
            result = score_challenges(len(set(completed) & set(self.challenges)), len(self.challenges))
        except Exception as e:
            logger.warning(f"[Liveness] Challenge runner failed: {e}")
            result = LivenessResult(
                passed=False,
                score=0,
                completed_challenges=0,
                total_challenges=len(self.challenges),
            )

        if not self.on_complete(result, session):
            return None
        return result

    def reset(self) -> None:
        self.result = None
        self.is_open = False
        self._session += 1
