import unittest
from unittest.mock import patch

from backend.correlation_scoring import (
    DEFAULT_CORRELATION_CONFIG,
    CorrelationConfig,
    CorrelationResult,
    confidence_tier,
    is_eligible,
    score_signals,
)
from backend.correlation_signals import SignalVector, extract_signals, profile_for_session
from backend.models import Session


class ScoreSignalsTests(unittest.TestCase):
    def test_related_pair_scores_high_with_three_reasons(self) -> None:
        # Same path, 60% file overlap, 10 minutes apart.
        a = Session(
            sessionId="a", projectPath="/work/app", cwd="/work/app",
            startTime="2026-01-05T10:00:00Z", endTime="2026-01-05T10:30:00Z",
            filesTouched=["a", "b", "c", "d"],
        )
        b = Session(
            sessionId="b", projectPath="/work/app", cwd="/elsewhere",
            startTime="2026-01-05T10:40:00Z", endTime="2026-01-05T11:00:00Z",
            filesTouched=["a", "b", "c", "e"],
        )
        signals = extract_signals(profile_for_session(a), profile_for_session(b), DEFAULT_CORRELATION_CONFIG.horizon_seconds)
        result = score_signals(signals)

        self.assertAlmostEqual(result.score, 0.35 + 0.18 + 0.25 * (1 - 600 / 14400), places=5)
        self.assertEqual(confidence_tier(result.score), "high")
        self.assertEqual(result.reasons, ("project_path_match", "file_overlap", "time_proximity"))

    def test_no_triggered_signal_scores_zero(self) -> None:
        # Weak time signal below its trigger still contributes nothing on its own.
        signals = SignalVector(path_match=False, cwd_match=False, file_overlap=0.1, time_proximity=0.4)
        result = score_signals(signals)
        self.assertEqual(result, CorrelationResult(score=0.0, reasons=()))
        self.assertFalse(is_eligible(result))

    def test_score_is_symmetric(self) -> None:
        a = Session(sessionId="a", projectPath="/p", startTime="2026-01-05T10:00:00Z", filesTouched=["x", "y"])
        b = Session(sessionId="b", projectPath="/p", startTime="2026-01-05T12:00:00Z", filesTouched=["y"])
        horizon = DEFAULT_CORRELATION_CONFIG.horizon_seconds
        ab = score_signals(extract_signals(profile_for_session(a), profile_for_session(b), horizon))
        ba = score_signals(extract_signals(profile_for_session(b), profile_for_session(a), horizon))
        self.assertEqual(ab, ba)

    def test_only_reason_below_medium_is_not_eligible(self) -> None:
        signals = SignalVector(path_match=False, cwd_match=True, file_overlap=0.0, time_proximity=0.0)
        result = score_signals(signals)
        self.assertEqual(result.reasons, ("cwd_match",))
        self.assertAlmostEqual(result.score, 0.1)
        self.assertFalse(is_eligible(result))


class ConfidenceTierTests(unittest.TestCase):
    def test_band_edges(self) -> None:
        self.assertEqual(confidence_tier(0.7), "high")
        self.assertEqual(confidence_tier(0.69999), "medium")
        self.assertEqual(confidence_tier(0.4), "medium")
        self.assertEqual(confidence_tier(0.39999), "low")


class CorrelationConfigTests(unittest.TestCase):
    def test_weights_are_normalized(self) -> None:
        cfg = CorrelationConfig(weight_path=2, weight_files=1, weight_time=1, weight_cwd=0)
        self.assertAlmostEqual(cfg.weight_path, 0.5)
        self.assertAlmostEqual(cfg.weight_path + cfg.weight_files + cfg.weight_time + cfg.weight_cwd, 1.0)

    def test_all_zero_weights_rejected(self) -> None:
        with self.assertRaises(ValueError):
            CorrelationConfig(weight_path=0, weight_files=0, weight_time=0, weight_cwd=0)

    def test_inverted_thresholds_rejected(self) -> None:
        with self.assertRaises(ValueError):
            CorrelationConfig(high_threshold=0.3, medium_threshold=0.5)

    def test_from_settings_reads_config_module(self) -> None:
        with patch("backend.config.TIME_HORIZON_HOURS", 2.0), patch("backend.config.MEDIUM_CONFIDENCE", 0.5):
            cfg = CorrelationConfig.from_settings()
        self.assertEqual(cfg.horizon_seconds, 7200.0)
        self.assertEqual(cfg.medium_threshold, 0.5)


if __name__ == "__main__":
    unittest.main()
