from __future__ import annotations

import unittest
from unittest.mock import patch

from psycopg import OperationalError

import api.db
from api.repositories.insights import dismiss_insight, get_insight, insert_insight, list_all
from ml.insights import ReconcileReadError, ReconcileWriteError, recompute_insights
from ml.signals import Signal
from tests.db_test_utils import reset_test_database, seed_evidence, seed_person


def _divorce(confidence: float) -> Signal:
    return Signal("divorce", confidence, "Matched divorce keyword(s) in content.")


class InsightsRecomputeTests(unittest.TestCase):
    def _count(self, sql: str) -> int:
        conn = api.db.get_connection()
        try:
            return int(conn.execute(sql).fetchone()["n"])
        finally:
            conn.close()

    def _seed_alice(self, count: int = 5) -> list[int]:
        seed_person("p-alice", "Alice Smith")
        return [
            seed_evidence(
                occurred_at=f"2026-02-0{day}T10:00:00+00:00",
                signals=[_divorce(0.9)],
                person_ref="p-alice",
            )
            for day in range(1, count + 1)
        ]

    def test_five_matching_items_collapse_into_one_insight(self) -> None:
        evidence_ids = self._seed_alice()
        result = recompute_insights()

        self.assertEqual(result["insights_created"], 1)
        rows = list_all()
        self.assertEqual(len(rows), 1)
        insight = rows[0]
        self.assertEqual(insight["kind"], "relationshipAtRisk")
        self.assertEqual(
            insight["message"],
            "Possible relationship change detected (Alice Smith). Consider a check-in.",
        )
        self.assertAlmostEqual(insight["confidence"], 0.9)
        self.assertEqual(insight["evidence_refs"], sorted(evidence_ids))

    def test_dismissed_insight_stays_frozen(self) -> None:
        evidence_ids = self._seed_alice()
        recompute_insights()
        insight_id = list_all()[0]["id"]
        dismissed = dismiss_insight(insight_id)

        seed_evidence(
            occurred_at="2026-02-07T10:00:00+00:00",
            signals=[_divorce(0.95)],
            person_ref="p-alice",
        )
        result = recompute_insights()

        self.assertEqual(result["insights_created"], 0)
        self.assertEqual(result["dismissed_skipped"], 1)
        rows = list_all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["dismissed_at"], dismissed["dismissed_at"])
        self.assertEqual(rows[0]["evidence_refs"], sorted(evidence_ids))
        self.assertAlmostEqual(rows[0]["confidence"], 0.9)

    def test_unlinked_and_context_compliance_form_two_insights(self) -> None:
        conn = api.db.get_connection()
        try:
            conn.execute(
                "INSERT INTO contexts (id, name, created_at) VALUES ('c-smith', 'Smith Household', NOW()::text)"
            )
            conn.commit()
        finally:
            conn.close()
        for day in range(1, 4):
            seed_evidence(
                occurred_at=f"2026-02-0{day}T08:00:00+00:00",
                signals=[Signal("unlinkedEvidence", 0.65, "Calendar event isn't linked.")],
                source_kind="calendar",
            )
        for day in range(4, 6):
            seed_evidence(
                occurred_at=f"2026-02-0{day}T08:00:00+00:00",
                signals=[Signal("complianceRisk", 0.7, "")],
                context_ref="c-smith",
            )

        recompute_insights()
        by_kind = {row["kind"]: row for row in list_all()}

        self.assertEqual(set(by_kind), {"followUp", "complianceWarning"})
        self.assertEqual(by_kind["followUp"]["message"], "Suggested follow-up.")
        self.assertEqual(len(by_kind["followUp"]["evidence_refs"]), 3)
        self.assertEqual(
            by_kind["complianceWarning"]["message"],
            "Compliance review recommended (Smith Household).",
        )
        self.assertEqual(len(by_kind["complianceWarning"]["evidence_refs"]), 2)

    def test_second_run_changes_nothing(self) -> None:
        self._seed_alice()
        recompute_insights()
        before = list_all()

        result = recompute_insights()

        self.assertEqual(result["insights_created"], 0)
        self.assertEqual(result["insights_updated"], 0)
        self.assertEqual(result["insights_unchanged"], 1)
        self.assertEqual(list_all(), before)

    def test_new_evidence_raises_confidence_to_max(self) -> None:
        seed_evidence(occurred_at="2026-02-01T10:00:00+00:00", signals=[_divorce(0.6)], person_ref="p-bob")
        recompute_insights()
        newer = seed_evidence(
            occurred_at="2026-02-02T10:00:00+00:00", signals=[_divorce(0.8)], person_ref="p-bob"
        )

        result = recompute_insights()

        self.assertEqual(result["insights_updated"], 1)
        rows = list_all()
        self.assertEqual(len(rows), 1)
        self.assertAlmostEqual(rows[0]["confidence"], 0.8)
        self.assertIn(newer, rows[0]["evidence_refs"])
        # target falls back to the raw ref when no display name is known
        self.assertEqual(rows[0]["message"], "Possible relationship change detected (p-bob). Consider a check-in.")

    def test_group_keys_stay_unique(self) -> None:
        for person_ref in ("p-1", "p-2"):
            for day in (1, 2):
                seed_evidence(
                    occurred_at=f"2026-02-0{day}T10:00:00+00:00",
                    signals=[Signal("comingOfAge", 0.55 + day / 10, "")],
                    person_ref=person_ref,
                )
                seed_evidence(
                    occurred_at=f"2026-02-0{day}T11:00:00+00:00",
                    signals=[Signal("unlinkedEvidence", 0.6, "")],
                    person_ref=person_ref,
                )
        recompute_insights()
        recompute_insights()

        self.assertEqual(
            self._count(
                """
                SELECT COUNT(*) AS n FROM (
                    SELECT person_ref, context_ref, kind FROM insights
                    GROUP BY person_ref, context_ref, kind HAVING COUNT(*) > 1
                ) dupes
                """
            ),
            0,
        )
        rows = list_all()
        self.assertEqual(len(rows), 2)
        for row in rows:
            # first writer (comingOfAge) sets the message; confidence is the group max
            self.assertTrue(row["message"].startswith("Coming of age event"))
            self.assertAlmostEqual(row["confidence"], 0.75)

    def test_write_failure_rolls_back_whole_pass(self) -> None:
        seed_evidence(occurred_at="2026-02-01T10:00:00+00:00", signals=[_divorce(0.7)], person_ref="p-1")
        seed_evidence(occurred_at="2026-02-01T11:00:00+00:00", signals=[_divorce(0.7)], person_ref="p-2")

        calls = {"n": 0}

        def flaky_insert(conn, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise OperationalError("simulated write failure")
            return insert_insight(conn, **kwargs)

        with patch("ml.insights.insert_insight", side_effect=flaky_insert):
            with self.assertRaises(ReconcileWriteError):
                recompute_insights()

        self.assertEqual(list_all(), [])
        self.assertEqual(recompute_insights()["insights_created"], 2)

    def test_read_failure_leaves_store_untouched(self) -> None:
        self._seed_alice(count=1)
        with patch("ml.insights.list_signaled_evidence", side_effect=OperationalError("scan failed")):
            with self.assertRaises(ReconcileReadError):
                recompute_insights()
        self.assertEqual(list_all(), [])

    def test_get_insight_returns_none_for_unknown_id(self) -> None:
        self.assertIsNone(get_insight(999))


if __name__ == "__main__":
    unittest.main()
