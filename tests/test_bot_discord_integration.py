"""
Unit tests for Discord bot command handlers with mocked interactions.
"""
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import discord

from mcq_trainer.bot import QuizBot, build_request
from mcq_trainer.data_manager import DataManager
from mcq_trainer.models import RequestScope, SubCategoryLearningMode
from mcq_trainer.question_store import QuestionStoreError
from mcq_trainer.quiz_controller import QuizController
from tests.test_fixtures import MockDiscordObjects, TestFixtures


class TestDiscordBotIntegration(unittest.IsolatedAsyncioTestCase):
    """Test bot handlers against real components and a mocked Discord API."""

    async def asyncSetUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.bot = QuizBot()
        self.bot.config_manager = TestFixtures.create_config_manager()
        self.bot.config_manager.set_image_directory(self.temp_dir)
        self.bot.store = TestFixtures.create_store(self.temp_dir, TestFixtures.create_sample_questions())
        self.bot.data_manager = DataManager(self.bot.store)
        self.bot.quiz_controller = QuizController(self.bot.store, self.bot.config_manager)

    async def asyncTearDown(self):
        """Clean up after tests."""
        await self.bot.quiz_controller.wait_for_background_writes()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def sent_embeds(self, send_mock):
        kwargs = send_mock.call_args.kwargs
        if 'embeds' in kwargs:
            return kwargs['embeds']
        return [kwargs['embed']]

    async def test_help_command_success(self):
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_help(interaction)

        interaction.response.send_message.assert_called_once()
        embed = self.sent_embeds(interaction.response.send_message)[0]
        self.assertIn("/quiz", embed.fields[0].value)
        self.assertIn("Questions in bank: 6", embed.fields[2].value)

    async def test_help_command_store_error(self):
        interaction = MockDiscordObjects.create_mock_interaction()

        with patch.object(self.bot.store, "get_question_count", side_effect=QuestionStoreError("locked")):
            await self.bot.handle_help(interaction)

        embed = self.sent_embeds(interaction.response.send_message)[0]
        self.assertEqual(embed.title, "❌ Help Error")

    async def test_quiz_command_shows_first_question(self):
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_quiz(interaction, "Navigation", "Lights")

        embeds = self.sent_embeds(interaction.response.send_message)
        self.assertEqual(embeds[0].title, "🎯 Quiz Started")
        self.assertEqual(embeds[1].title, "❓ Question 1/2")
        self.assertEqual([field.name for field in embeds[1].fields], ["A", "B", "C", "D"])

    async def test_quiz_command_with_no_matches(self):
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_quiz(interaction, "Unknown")

        embed = self.sent_embeds(interaction.response.send_message)[0]
        self.assertEqual(embed.title, "🏁 Quiz Finished")
        self.assertIn("0/0", embed.description)

    async def test_quiz_command_conflict(self):
        await self.bot.handle_quiz(MockDiscordObjects.create_mock_interaction())
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_quiz(interaction)

        embed = self.sent_embeds(interaction.response.send_message)[0]
        self.assertEqual(embed.title, "⚠️ Cannot Start")
        self.assertTrue(interaction.response.send_message.call_args.kwargs['ephemeral'])

    async def test_answer_flow_to_completion(self):
        """Test answering every question ends with the score embed."""
        await self.bot.handle_quiz(MockDiscordObjects.create_mock_interaction(), "Seamanship", "Knots")

        interaction = None
        for _ in range(2):
            question = self.bot.quiz_controller.get_current_question(12345)
            interaction = MockDiscordObjects.create_mock_interaction()
            await self.bot.handle_answer(interaction, question.correct_answer)

        embeds = self.sent_embeds(interaction.response.send_message)
        self.assertEqual(embeds[0].title, "✅ Correct!")
        self.assertEqual(embeds[1].title, "🏁 Quiz Finished")
        self.assertIn("2/2", embeds[1].description)

    async def test_wrong_answer_shows_correct_option(self):
        await self.bot.handle_quiz(MockDiscordObjects.create_mock_interaction(), "Navigation", "Lights")
        question = self.bot.quiz_controller.get_current_question(12345)
        wrong = next(option for option in "ABCD" if option != question.correct_answer)
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_answer(interaction, wrong)

        embeds = self.sent_embeds(interaction.response.send_message)
        self.assertIn(question.correct_answer, embeds[0].title)
        self.assertEqual(embeds[1].title, "❓ Question 2/2")

    async def test_answer_without_quiz(self):
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_answer(interaction, "A")

        embed = self.sent_embeds(interaction.response.send_message)[0]
        self.assertEqual(embed.title, "⚠️ Answer Not Taken")

    async def test_question_command(self):
        interaction = MockDiscordObjects.create_mock_interaction()
        await self.bot.handle_question(interaction)
        self.assertEqual(self.sent_embeds(interaction.response.send_message)[0].title, "ℹ️ No Active Quiz")

        await self.bot.handle_quiz(MockDiscordObjects.create_mock_interaction(), "Navigation")
        interaction = MockDiscordObjects.create_mock_interaction()
        await self.bot.handle_question(interaction)
        self.assertEqual(self.sent_embeds(interaction.response.send_message)[0].title, "❓ Question 1/4")

    async def test_question_image_attached_when_present(self):
        image_path = Path(self.temp_dir) / "buoy.png"
        image_path.write_bytes(b"\x89PNG\r\n")
        question = TestFixtures.create_question(image_name="buoy.png")
        embed = self.bot.build_question_embed(question, 1, 1)

        image = self.bot.question_image_file(question, embed)

        self.assertIsInstance(image, discord.File)
        self.assertEqual(embed.image.url, "attachment://buoy.png")
        self.assertIsNone(self.bot.question_image_file(TestFixtures.create_question(image_name="missing.png"),
                                                       embed))

    async def test_status_and_stop(self):
        await self.bot.handle_quiz(MockDiscordObjects.create_mock_interaction())

        status = MockDiscordObjects.create_mock_interaction()
        await self.bot.handle_status(status)
        self.assertIn("Progress: 0/6", self.sent_embeds(status.response.send_message)[0].description)

        stop = MockDiscordObjects.create_mock_interaction()
        await self.bot.handle_stop(stop)
        self.assertEqual(self.sent_embeds(stop.response.send_message)[0].title, "🛑 Quiz Stopped")
        self.assertIsNone(self.bot.quiz_controller.get_session(12345))

    async def test_stop_without_quiz(self):
        interaction = MockDiscordObjects.create_mock_interaction()
        await self.bot.handle_stop(interaction)
        self.assertEqual(self.sent_embeds(interaction.response.send_message)[0].title, "ℹ️ No Active Quiz")

    async def test_stats_command(self):
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_stats(interaction)

        embed = self.sent_embeds(interaction.response.send_message)[0]
        self.assertIn("Questions: 6 (answered: 5)", embed.description)
        self.assertIn("**Seamanship**", embed.description)

    async def test_reset_stats_command(self):
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_reset_stats(interaction, "Seamanship", "Knots")

        embed = self.sent_embeds(interaction.response.send_message)[0]
        self.assertEqual(embed.title, "🧹 Statistics Reset")
        self.assertEqual(sum(q.times_answered for q in self.bot.store.get_questions_by_category("Seamanship")), 0)

    async def test_practice_unanswered(self):
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_practice(interaction, SubCategoryLearningMode.UNANSWERED, "Navigation", "Lights")

        embeds = self.sent_embeds(interaction.response.send_message)
        self.assertEqual(embeds[1].title, "❓ Question 1/1")

    async def test_categories_command(self):
        interaction = MockDiscordObjects.create_mock_interaction()
        await self.bot.handle_categories(interaction)
        self.assertIn("• Navigation", self.sent_embeds(interaction.response.send_message)[0].description)

        interaction = MockDiscordObjects.create_mock_interaction()
        await self.bot.handle_categories(interaction, "Navigation")
        self.assertEqual(self.sent_embeds(interaction.response.send_message)[0].description, "• Charts\n• Lights")

    async def test_set_threshold_command(self):
        interaction = MockDiscordObjects.create_mock_interaction()
        await self.bot.handle_set_threshold(interaction, 5)
        self.assertEqual(self.bot.config_manager.get_weak_threshold(), 5)

        interaction = MockDiscordObjects.create_mock_interaction()
        await self.bot.handle_set_threshold(interaction, 0)
        self.assertEqual(self.sent_embeds(interaction.response.send_message)[0].title, "❌ Configuration Error")

    async def test_import_csv_command(self):
        rows = [TestFixtures.create_csv_row("Law", "Signals", str(i)) for i in range(3)]
        rows.append(TestFixtures.create_csv_row("Law", "Signals", "9", correct_answer="Q"))
        attachment = MockDiscordObjects.create_mock_attachment(TestFixtures.create_csv_text(rows).encode("utf-8"))
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_import_csv(interaction, attachment)

        interaction.response.defer.assert_called_once()
        embed = self.sent_embeds(interaction.followup.send)[0]
        self.assertIn("**3**", embed.description)
        self.assertEqual(embed.fields[0].name, "⚠️ 1 rows skipped")
        self.assertEqual(self.bot.store.get_categories(), ["Law"])

    async def test_import_csv_fatal_failure(self):
        attachment = MockDiscordObjects.create_mock_attachment(b"nothing,useful\n")
        interaction = MockDiscordObjects.create_mock_interaction()
        interaction.response.is_done.return_value = True

        await self.bot.handle_import_csv(interaction, attachment)

        embed = self.sent_embeds(interaction.followup.send)[0]
        self.assertEqual(embed.title, "❌ Import Error")
        self.assertEqual(self.bot.store.get_question_count(), 6)

    async def test_export_csv_command(self):
        interaction = MockDiscordObjects.create_mock_interaction()

        await self.bot.handle_export_csv(interaction)

        sent_file = interaction.response.send_message.call_args.kwargs['file']
        self.assertEqual(sent_file.filename, "questions_export.csv")

    async def test_send_error_response_uses_followup_when_done(self):
        interaction = MockDiscordObjects.create_mock_interaction()
        interaction.response.is_done.return_value = True

        await self.bot.send_error_response(interaction, "boom")

        interaction.followup.send.assert_called_once()
        interaction.response.send_message.assert_not_called()


class TestBuildRequest(unittest.TestCase):
    """Test scope selection for tagged requests."""

    def test_scope_from_names(self):
        self.assertEqual(build_request(SubCategoryLearningMode.ALL).scope, RequestScope.OVERALL)
        self.assertEqual(build_request(SubCategoryLearningMode.ALL, "Nav").scope, RequestScope.CATEGORY)
        self.assertEqual(build_request(SubCategoryLearningMode.ALL, "Nav", "Lights").scope,
                         RequestScope.SUB_CATEGORY)

    def test_empty_strings_are_missing(self):
        request = build_request(SubCategoryLearningMode.UNANSWERED, "", "")
        self.assertEqual(request.scope, RequestScope.OVERALL)
        self.assertIsNone(request.category)


if __name__ == '__main__':
    unittest.main()
