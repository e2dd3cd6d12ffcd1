"""
Test Suite: Liveness Orchestrator

Tests:
1. Challenge scoring
2. Open / complete / cancel
3. Runner-driven sessions
"""

import sys
import os
import asyncio

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def test_score_challenges():
    """One missed challenge is tolerated."""
    print("\nTEST 1: Challenge Scoring")
    print("-" * 40)

    from onboarding.liveness import score_challenges

    assert score_challenges(5, 5).score == 100
    assert score_challenges(5, 5).passed
    assert score_challenges(4, 5).score == 80
    assert score_challenges(4, 5).passed
    assert not score_challenges(3, 5).passed
    assert not score_challenges(0, 0).passed
    assert score_challenges(9, 5).completed_challenges == 5

    print(" PASSED: Challenge scoring")


def test_open_complete_cancel():
    """Cancelled and superseded sessions never store a result."""
    print("\nTEST 2: Session Lifecycle")
    print("-" * 40)

    from onboarding.liveness import LivenessOrchestrator, score_challenges

    liveness = LivenessOrchestrator()
    assert not liveness.passed

    liveness.open()
    liveness.on_cancel()
    assert not liveness.is_open
    assert not liveness.on_complete(score_challenges(5, 5))
    assert liveness.result is None

    first = liveness.open()
    second = liveness.open()
    assert not liveness.on_complete(score_challenges(5, 5), session=first)
    assert liveness.on_complete(score_challenges(2, 5), session=second)
    assert not liveness.passed

    # A failed result is replaced by re-opening
    liveness.open()
    assert liveness.on_complete(score_challenges(5, 5))
    assert liveness.passed
    assert liveness.result.score == 100

    liveness.reset()
    assert liveness.result is None

    print(" PASSED: Session lifecycle")


def test_runner_sessions():
    """The runner's completed challenges are scored; runner failures store a failed result."""
    print("\nTEST 3: Runner Sessions")
    print("-" * 40)

    from onboarding.liveness import DEFAULT_CHALLENGES, LivenessChallenge, LivenessOrchestrator

    async def complete_all(challenges):
        return challenges

    async def skip_blink(challenges):
        return [c for c in challenges if c != LivenessChallenge.BLINK]

    async def camera_lost(challenges):
        raise RuntimeError("Camera disconnected")

    async def run():
        result = await LivenessOrchestrator(runner=complete_all).run()
        assert result.passed and result.score == 100
        assert result.total_challenges == len(DEFAULT_CHALLENGES)

        result = await LivenessOrchestrator(runner=skip_blink).run()
        assert result.passed and result.score == 80

        liveness = LivenessOrchestrator(runner=camera_lost)
        result = await liveness.run()
        assert not result.passed and result.score == 0
        assert liveness.result is result

        liveness.runner = complete_all
        await liveness.run()
        assert liveness.passed

        with pytest.raises(RuntimeError):
            await LivenessOrchestrator().run()

    asyncio.run(run())

    assert LivenessChallenge.TURN_LEFT.instruction == "Slowly turn your head to the left"
    print(" PASSED: Runner sessions")
