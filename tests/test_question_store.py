"""
Unit tests for QuestionStore sqlite persistence.
"""
import shutil
import tempfile
import unittest
from pathlib import Path

from mcq_trainer.question_store import PersistenceWriteFailure, QuestionStore
from tests.test_fixtures import TestFixtures


class TestQuestionStore(unittest.TestCase):
    """Test cases for QuestionStore."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.questions = TestFixtures.create_sample_questions()
        self.store = TestFixtures.create_store(self.temp_dir, self.questions)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_initialize_creates_database_file(self):
        """Test that initialize creates the file and nested directories."""
        store = QuestionStore(Path(self.temp_dir) / "nested" / "bank.db")
        store.initialize()

        self.assertTrue(store.db_path.exists())
        self.assertEqual(store.get_question_count(), 0)

    def test_initialize_is_repeatable(self):
        """Test that initializing twice keeps existing rows."""
        self.store.initialize()
        self.assertEqual(self.store.get_question_count(), len(self.questions))

    def test_insert_assigns_ids(self):
        """Test that stored questions get unique positive ids."""
        stored = self.store.get_all_questions()

        ids = [q.id for q in stored]
        self.assertEqual(len(ids), len(set(ids)))
        self.assertTrue(all(q.is_persisted for q in stored))

    def test_round_trip_preserves_fields(self):
        """Test that every column survives storage."""
        original = TestFixtures.create_question("Law", "Signals", "7", "D", image_name="sign.png",
                                                times_answered=9, times_correct=4, times_chosen_a=1,
                                                times_chosen_b=2, times_chosen_c=2, times_chosen_d=4,
                                                times_correct_recent=2)
        self.store.insert_all([original])

        stored = self.store.get_questions_by_subcategory("Law", "Signals")[0]
        original.id = stored.id
        self.assertEqual(stored, original)

    def test_get_question_by_id(self):
        """Test lookup by id and missing id."""
        first = self.store.get_all_questions()[0]

        self.assertEqual(self.store.get_question_by_id(first.id), first)
        self.assertIsNone(self.store.get_question_by_id(99999))

    def test_get_random_questions_respects_limit(self):
        """Test that the random path is capped."""
        self.assertEqual(len(self.store.get_random_questions(limit=2)), 2)
        self.assertEqual(len(self.store.get_random_questions(limit=1000)), len(self.questions))

    def test_get_questions_by_category_and_subcategory(self):
        """Test category and sub-category scopes."""
        navigation = self.store.get_questions_by_category("Navigation")
        charts = self.store.get_questions_by_subcategory("Navigation", "Charts")

        self.assertEqual(len(navigation), 4)
        self.assertTrue(all(q.category == "Navigation" for q in navigation))
        self.assertEqual(len(charts), 2)
        self.assertTrue(all(q.sub_category == "Charts" for q in charts))
        self.assertEqual(self.store.get_questions_by_category("Unknown"), [])

    def test_get_weak_questions_exact_subset(self):
        """Test that weak questions are exactly those below the threshold."""
        for threshold in (0, 1, 3, 6):
            weak = self.store.get_weak_questions(threshold)
            expected = {(q.category, q.sub_category, q.question_number)
                        for q in self.questions if q.times_correct_recent < threshold}
            actual = {(q.category, q.sub_category, q.question_number) for q in weak}
            self.assertEqual(actual, expected, f"threshold {threshold}")

    def test_get_weak_questions_scoped(self):
        """Test that weak selection stays inside the requested scope."""
        weak = self.store.get_weak_questions(3, "Navigation")
        self.assertTrue(all(q.category == "Navigation" and q.times_correct_recent < 3 for q in weak))
        self.assertEqual(len(weak), 3)

        weak_lights = self.store.get_weak_questions(3, "Navigation", "Lights")
        self.assertEqual([q.question_number for q in weak_lights], ["1"])

    def test_get_unanswered_questions(self):
        """Test unanswered selection store-wide and per sub-category."""
        self.assertEqual(len(self.store.get_unanswered_questions()), 1)
        self.assertEqual(len(self.store.get_unanswered_questions("Navigation", "Lights")), 1)
        self.assertEqual(self.store.get_unanswered_questions("Seamanship", "Knots"), [])

    def test_get_incorrectly_answered_questions(self):
        """Test that only answered questions with a wrong attempt are returned."""
        charts = self.store.get_incorrectly_answered_questions("Navigation", "Charts")
        knots = self.store.get_incorrectly_answered_questions("Seamanship", "Knots")
        lights = self.store.get_incorrectly_answered_questions("Navigation", "Lights")

        self.assertEqual([q.question_number for q in charts], ["1"])
        self.assertEqual([q.question_number for q in knots], ["1"])
        self.assertEqual(lights, [])

    def test_categories_and_subcategories_sorted(self):
        """Test distinct sorted listings."""
        self.assertEqual(self.store.get_categories(), ["Navigation", "Seamanship"])
        self.assertEqual(self.store.get_subcategories("Navigation"), ["Charts", "Lights"])
        self.assertEqual(self.store.get_subcategories("Unknown"), [])

    def test_update_question(self):
        """Test full record update keyed by id."""
        question = self.store.get_questions_by_subcategory("Navigation", "Lights")[0]
        question.text = "Changed?"
        question.times_answered = 10

        self.store.update_question(question)

        stored = self.store.get_question_by_id(question.id)
        self.assertEqual(stored.text, "Changed?")
        self.assertEqual(stored.times_answered, 10)

    def test_update_question_not_persisted_fails(self):
        """Test that updating an unsaved question raises."""
        with self.assertRaises(PersistenceWriteFailure):
            self.store.update_question(TestFixtures.create_question())

    def test_update_question_missing_record_fails(self):
        """Test that updating a deleted record raises."""
        question = self.store.get_all_questions()[0]
        self.store.clear_all_questions()

        with self.assertRaises(PersistenceWriteFailure):
            self.store.update_question(question)

    def test_update_with_reads_stored_record(self):
        """Test that update_with modifies the stored state, not a stale copy."""
        question = self.store.get_all_questions()[0]

        def bump(stored):
            stored.times_answered += 1
            return stored

        self.store.update_with(question.id, bump)
        updated = self.store.update_with(question.id, bump)

        self.assertEqual(updated.times_answered, question.times_answered + 2)
        self.assertEqual(self.store.get_question_by_id(question.id).times_answered, question.times_answered + 2)

    def test_update_with_missing_record_fails(self):
        """Test that update_with raises for unknown ids."""
        with self.assertRaises(PersistenceWriteFailure):
            self.store.update_with(99999, lambda q: q)

    def test_update_with_rolls_back_on_error(self):
        """Test that an exception in the update function leaves the record unchanged."""
        question = self.store.get_all_questions()[1]

        def fail(stored):
            raise ValueError("boom")

        with self.assertRaises(ValueError):
            self.store.update_with(question.id, fail)
        self.assertEqual(self.store.get_question_by_id(question.id), question)

    def test_reset_statistics_for_subcategory(self):
        """Test that reset zeroes counters of one pair only."""
        touched = self.store.reset_statistics_for_subcategory("Navigation", "Charts")

        self.assertEqual(touched, 2)
        for question in self.store.get_questions_by_subcategory("Navigation", "Charts"):
            self.assertEqual(question.times_answered, 0)
            self.assertEqual(question.times_correct, 0)
            self.assertEqual(question.times_chosen_a + question.times_chosen_b +
                             question.times_chosen_c + question.times_chosen_d, 0)
            self.assertEqual(question.times_correct_recent, 0)

        knots = self.store.get_questions_by_subcategory("Seamanship", "Knots")
        self.assertEqual(sum(q.times_answered for q in knots), 6)

    def test_reset_statistics_unknown_pair(self):
        """Test reset of a missing pair touches nothing."""
        self.assertEqual(self.store.reset_statistics_for_subcategory("Nope", "Nope"), 0)

    def test_replace_all(self):
        """Test that replace_all clears then inserts with new ids."""
        old_ids = {q.id for q in self.store.get_all_questions()}
        replacement = [TestFixtures.create_question("Law", "Signals", str(i)) for i in range(3)]

        inserted = self.store.replace_all(replacement)

        stored = self.store.get_all_questions()
        self.assertEqual(inserted, 3)
        self.assertEqual(len(stored), 3)
        self.assertTrue(all(q.category == "Law" for q in stored))
        self.assertTrue(old_ids.isdisjoint({q.id for q in stored}))

    def test_clear_all_questions(self):
        """Test full clear."""
        self.store.clear_all_questions()
        self.assertEqual(self.store.get_question_count(), 0)
        self.assertEqual(self.store.get_categories(), [])


if __name__ == '__main__':
    unittest.main()
