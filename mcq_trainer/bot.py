import discord
from discord import app_commands
from discord.ext import commands
import asyncio
import io
import logging
import os
from pathlib import Path
from typing import List, Optional

from .aggregation import aggregate, format_report
from .config_manager import ConfigManager
from .data_manager import DataManager, ImportFatalFailure
from .models import Question, QuizRequest, RequestScope, SessionState, SubCategoryLearningMode
from .question_store import PersistenceWriteFailure, QuestionStore, QuestionStoreError
from .quiz_controller import QuizController

logger = logging.getLogger(__name__)

EMBED_DESCRIPTION_LIMIT = 4000

OPTION_CHOICES = [app_commands.Choice(name=option, value=option) for option in ("A", "B", "C", "D")]

MODE_CHOICES = [
    app_commands.Choice(name="All questions", value=SubCategoryLearningMode.ALL.value),
    app_commands.Choice(name="Unanswered", value=SubCategoryLearningMode.UNANSWERED.value),
    app_commands.Choice(name="Answered incorrectly", value=SubCategoryLearningMode.INCORRECT.value),
    app_commands.Choice(name="Weak (low recent streak)", value=SubCategoryLearningMode.WEAK_RECENT_STREAK.value),
    app_commands.Choice(name="Reset statistics", value=SubCategoryLearningMode.RESET_STATS.value),
]


def build_request(
    mode: SubCategoryLearningMode,
    category: Optional[str] = None,
    sub_category: Optional[str] = None,
    threshold: Optional[int] = None,
) -> QuizRequest:
    """Build a tagged request, picking the scope from the names given."""
    if category and sub_category:
        scope = RequestScope.SUB_CATEGORY
    elif category:
        scope = RequestScope.CATEGORY
    else:
        scope = RequestScope.OVERALL
    return QuizRequest(
        scope=scope,
        mode=mode,
        category=category or None,
        sub_category=sub_category or None,
        recent_streak_threshold=threshold,
    )


class QuizBot(commands.Bot):
    """Discord bot for multiple-choice training quizzes"""

    def __init__(self, config=None):
        # Slash commands only need the guilds intent
        intents = discord.Intents.none()
        intents.guilds = True

        command_prefix = '!'
        if config and 'bot' in config:
            command_prefix = config['bot'].get('command_prefix', '!')

        super().__init__(
            command_prefix=command_prefix,
            intents=intents,
            help_command=None
        )

        self.app_config = config or {}

        self.config_manager: Optional[ConfigManager] = None
        self.store: Optional[QuestionStore] = None
        self.data_manager: Optional[DataManager] = None
        self.quiz_controller: Optional[QuizController] = None

    async def setup_hook(self):
        """Called when the bot is starting up"""
        try:
            logger.info("Setting up bot components...")

            self.config_manager = ConfigManager()
            if self.app_config:
                await self.apply_configuration()

            self.store = QuestionStore(self.config_manager.get_database_path())
            await asyncio.to_thread(self.store.initialize)
            self.data_manager = DataManager(self.store, self.config_manager.get_bundled_csv_path())
            self.quiz_controller = QuizController(self.store, self.config_manager)

            await self.load_question_bank()
            await self.setup_commands()

            logger.info("Bot setup completed successfully")

        except Exception as e:
            logger.error(f"Error during bot setup: {e}")
            raise

    async def apply_configuration(self):
        """Apply settings from configuration file to managers."""
        rejected = self.config_manager.apply_config(self.app_config)
        for message in rejected:
            logger.warning(f"Configuration value ignored: {message}")
        logger.info("Configuration applied")

    async def load_question_bank(self):
        """Seed the store from the bundled CSV when it is empty"""
        try:
            result = await asyncio.to_thread(self.data_manager.populate_from_bundled_csv_if_needed)
            if result.get('populated'):
                logger.info(f"Seeded question bank with {result['imported']} questions "
                            f"({result['skipped']} rows skipped)")
        except (ImportFatalFailure, QuestionStoreError) as e:
            # Bot still serves imports and an empty bank
            logger.error(f"Could not seed question bank: {e}")

    async def setup_commands(self):
        """Register all slash commands"""

        @self.tree.command(name="help", description="Display available commands and their descriptions")
        async def help_command(interaction: discord.Interaction):
            await self.handle_help(interaction)

        @self.tree.command(name="quiz", description="Start a quiz, optionally scoped and limited to weak questions")
        @app_commands.describe(
            category="Only questions from this category",
            sub_category="Only questions from this sub-category (needs a category)",
            only_weak="Only questions whose recent correct streak is below the threshold",
            threshold="Weak threshold, defaults to the configured value"
        )
        async def quiz_command(
            interaction: discord.Interaction,
            category: Optional[str] = None,
            sub_category: Optional[str] = None,
            only_weak: bool = False,
            threshold: Optional[app_commands.Range[int, 1, 50]] = None
        ):
            await self.handle_quiz(interaction, category, sub_category, only_weak, threshold)

        @self.tree.command(name="practice", description="Practice a category or sub-category in a learning mode")
        @app_commands.choices(mode=MODE_CHOICES)
        async def practice_command(
            interaction: discord.Interaction,
            mode: app_commands.Choice[str],
            category: Optional[str] = None,
            sub_category: Optional[str] = None
        ):
            await self.handle_practice(interaction, SubCategoryLearningMode(mode.value), category, sub_category)

        @self.tree.command(name="answer", description="Answer the current question")
        @app_commands.choices(option=OPTION_CHOICES)
        async def answer_command(interaction: discord.Interaction, option: app_commands.Choice[str]):
            await self.handle_answer(interaction, option.value)

        @self.tree.command(name="question", description="Show the current question again")
        async def question_command(interaction: discord.Interaction):
            await self.handle_question(interaction)

        @self.tree.command(name="status", description="Show current quiz status and progress")
        async def status_command(interaction: discord.Interaction):
            await self.handle_status(interaction)

        @self.tree.command(name="stop", description="Stop the current quiz session")
        async def stop_command(interaction: discord.Interaction):
            await self.handle_stop(interaction)

        @self.tree.command(name="stats", description="Show answer statistics per category and sub-category")
        async def stats_command(interaction: discord.Interaction):
            await self.handle_stats(interaction)

        @self.tree.command(name="reset_stats", description="Reset the statistics of one sub-category")
        async def reset_stats_command(interaction: discord.Interaction, category: str, sub_category: str):
            await self.handle_reset_stats(interaction, category, sub_category)

        @self.tree.command(name="categories", description="List categories, or the sub-categories of one")
        async def categories_command(interaction: discord.Interaction, category: Optional[str] = None):
            await self.handle_categories(interaction, category)

        @self.tree.command(name="set_threshold", description="Set the recent streak below which a question is weak")
        async def set_threshold_command(interaction: discord.Interaction, value: int):
            await self.handle_set_threshold(interaction, value)

        @self.tree.command(name="import_csv", description="Replace the question bank with a CSV file")
        async def import_csv_command(interaction: discord.Interaction, file: discord.Attachment):
            await self.handle_import_csv(interaction, file)

        @self.tree.command(name="export_csv", description="Download the question bank with statistics as CSV")
        async def export_csv_command(interaction: discord.Interaction):
            await self.handle_export_csv(interaction)

        logger.info("Slash commands registered successfully")

    async def on_ready(self):
        """Called when the bot has successfully connected to Discord"""
        logger.info(f"Bot is ready! Logged in as {self.user}")
        logger.info(f"Bot is in {len(self.guilds)} guilds")
        print(f"🤖 {self.user} is Ready and Online!")

        try:
            synced = await self.tree.sync()
            logger.info(f"Synced {len(synced)} slash commands")
            print(f"⚡ Synced {len(synced)} slash commands")
        except discord.HTTPException as e:
            logger.error(f"Failed to sync slash commands: {e}")

    async def close(self):
        """Let pending statistics writes finish before disconnecting"""
        if self.quiz_controller is not None:
            await self.quiz_controller.wait_for_background_writes()
        await super().close()

    async def on_error(self, event, *args, **kwargs):
        """Handle general bot errors"""
        logger.error(f"An error occurred in event {event}", exc_info=True)

    # Presentation helpers

    def build_question_embed(self, question: Question, position: int, total: int) -> discord.Embed:
        """Embed showing one question and its four options"""
        embed = discord.Embed(
            title=f"❓ Question {position}/{total}",
            description=question.text,
            color=0x3399ff
        )
        for option in ("A", "B", "C", "D"):
            embed.add_field(name=option, value=question.option_text(option) or "-", inline=False)
        embed.set_footer(text=f"{question.category} / {question.sub_category} • #{question.question_number} "
                              f"• answer with /answer")
        return embed

    def question_image_file(self, question: Question, embed: discord.Embed) -> Optional[discord.File]:
        """Attach the question's image when the file exists"""
        if not question.image_name:
            return None
        image_path = Path(self.config_manager.get_image_directory()) / question.image_name
        if not image_path.is_file():
            logger.debug(f"Image {image_path} not found for question {question.id}")
            return None
        embed.set_image(url=f"attachment://{image_path.name}")
        return discord.File(image_path, filename=image_path.name)

    async def send_current_question(self, interaction: discord.Interaction, extra_embeds: Optional[List[discord.Embed]] = None):
        """Send the session's current question, after any extra embeds"""
        channel_id = interaction.channel_id
        question = self.quiz_controller.get_current_question(channel_id)
        embeds = list(extra_embeds or [])
        files = []

        if question is not None:
            progress = self.quiz_controller.get_session_progress(channel_id)
            embed = self.build_question_embed(question, progress['current_question'], progress['total_questions'])
            image = self.question_image_file(question, embed)
            if image is not None:
                files.append(image)
            embeds.append(embed)

        if not embeds:
            return

        kwargs = {'embeds': embeds}
        if files:
            kwargs['files'] = files
        if interaction.response.is_done():
            await interaction.followup.send(**kwargs)
        else:
            await interaction.response.send_message(**kwargs)

    async def completion_embed(self, channel_id: int) -> discord.Embed:
        """Final score, plus a note about answers that could not be saved"""
        result = self.quiz_controller.get_session_result(channel_id) or {'score': 0, 'total': 0}
        total = result['total']
        percentage = int(result['score'] / total * 100) if total else 0

        embed = discord.Embed(
            title="🏁 Quiz Finished",
            description=f"Score: **{result['score']}/{total}** ({percentage}%)",
            color=0x00ff00
        )
        try:
            await self.quiz_controller.flush_pending_writes(channel_id)
        except PersistenceWriteFailure as e:
            embed.add_field(name="⚠️ Statistics not saved", value=str(e)[:1000], inline=False)
        embed.set_footer(text="Use /quiz or /practice to start again")
        return embed

    # Command handlers

    async def handle_help(self, interaction: discord.Interaction):
        """Handle /help command"""
        try:
            help_embed = discord.Embed(
                title="🎯 MCQ Trainer Commands",
                description="Train multiple-choice questions and track your streaks",
                color=0x00ff00
            )
            help_embed.add_field(
                name="🎮 Quiz",
                value=(
                    "`/quiz [category] [sub_category] [only_weak] [threshold]` - Start a quiz\n"
                    "`/practice <mode> [category] [sub_category]` - Learning modes and statistics reset\n"
                    "`/answer <A-D>` - Answer the current question\n"
                    "`/question` - Show the current question again\n"
                    "`/status` - Show quiz progress\n"
                    "`/stop` - End the quiz"
                ),
                inline=False
            )
            help_embed.add_field(
                name="📊 Question Bank",
                value=(
                    "`/stats` - Statistics per category and sub-category\n"
                    "`/categories [category]` - List categories or sub-categories\n"
                    "`/reset_stats <category> <sub_category>` - Zero statistics of a sub-category\n"
                    "`/set_threshold <value>` - Set the weak question threshold\n"
                    "`/import_csv <file>` - Replace the question bank\n"
                    "`/export_csv` - Download the question bank"
                ),
                inline=False
            )

            question_count = await asyncio.to_thread(self.store.get_question_count)
            settings_summary = self.config_manager.get_settings_summary(question_count)
            help_embed.add_field(
                name="⚙️ Current Settings",
                value=f"```\n{settings_summary}\n```",
                inline=False
            )

            await interaction.response.send_message(embed=help_embed)

        except (discord.HTTPException, QuestionStoreError) as e:
            logger.error(f"Error in help command: {e}")
            await self.send_error_response(interaction, "Could not display help", "❌ Help Error")

    async def handle_quiz(
        self,
        interaction: discord.Interaction,
        category: Optional[str] = None,
        sub_category: Optional[str] = None,
        only_weak: bool = False,
        threshold: Optional[int] = None
    ):
        """Handle /quiz command"""
        request = QuizRequest.for_filter(category, sub_category, only_weak, threshold)
        await self.start_request(interaction, request)

    async def handle_practice(
        self,
        interaction: discord.Interaction,
        mode: SubCategoryLearningMode,
        category: Optional[str] = None,
        sub_category: Optional[str] = None
    ):
        """Handle /practice command"""
        request = build_request(mode, category, sub_category)
        await self.start_request(interaction, request)

    async def start_request(self, interaction: discord.Interaction, request: QuizRequest):
        """Dispatch a request and show the first question or the reset result"""
        try:
            result = await self.quiz_controller.dispatch_request(interaction.channel_id, request)

            if not result['success']:
                await self.send_warning_response(interaction, result['user_message'], "⚠️ Cannot Start")
                return

            if result['action'] == 'reset_stats':
                await self.send_info_response(interaction, result['user_message'], "🧹 Statistics Reset")
                return

            session_info = result['session_info']
            if session_info['state'] == SessionState.FINISHED:
                embed = discord.Embed(
                    title="🏁 Quiz Finished",
                    description=f"{result['user_message']}",
                    color=0xffaa00
                )
                await interaction.response.send_message(embed=embed)
                return

            intro = discord.Embed(title="🎯 Quiz Started", description=result['user_message'], color=0x00ff00)
            await self.send_current_question(interaction, [intro])

        except discord.HTTPException as e:
            logger.error(f"Error starting quiz: {e}")
            await self.send_error_response(interaction, "Failed to start quiz", "❌ Quiz Control Error")

    async def handle_answer(self, interaction: discord.Interaction, option: str):
        """Handle /answer command"""
        channel_id = interaction.channel_id
        try:
            result = await self.quiz_controller.answer_question(channel_id, option)

            if not result['success']:
                await self.send_warning_response(interaction, result['user_message'], "⚠️ Answer Not Taken")
                return

            if not result['accepted']:
                await self.send_info_response(interaction, result['user_message'], "🏁 Quiz Finished")
                return

            question = result['question']
            feedback = discord.Embed(
                title=result['user_message'],
                description=f"**{result['correct_answer']}**: {question.option_text(result['correct_answer'])}",
                color=0x00ff00 if result['correct'] else 0xff0000
            )
            feedback.set_footer(text=f"Score: {result['score']}/{result['total']}")

            if result['finished']:
                completion = await self.completion_embed(channel_id)
                await interaction.response.send_message(embeds=[feedback, completion])
            else:
                await self.send_current_question(interaction, [feedback])

        except discord.HTTPException as e:
            logger.error(f"Error in answer command: {e}")
            await self.send_error_response(interaction, "Failed to process your answer", "❌ Answer Error")

    async def handle_question(self, interaction: discord.Interaction):
        """Handle /question command"""
        try:
            if self.quiz_controller.get_current_question(interaction.channel_id) is None:
                await self.send_info_response(interaction, "No question is waiting. Start a quiz with /quiz.",
                                              "ℹ️ No Active Quiz")
                return
            await self.send_current_question(interaction)
        except discord.HTTPException as e:
            logger.error(f"Error in question command: {e}")
            await self.send_error_response(interaction, "Failed to show the question", "❌ Quiz Error")

    async def handle_status(self, interaction: discord.Interaction):
        """Handle /status command"""
        try:
            summary = self.quiz_controller.get_session_status_summary(interaction.channel_id)
            embed = discord.Embed(title="📊 Quiz Status", description=summary, color=0x6699ff)
            await interaction.response.send_message(embed=embed)
        except discord.HTTPException as e:
            logger.error(f"Error in status command: {e}")
            await self.send_error_response(interaction, "Failed to get quiz status", "❌ Status Error")

    async def handle_stop(self, interaction: discord.Interaction):
        """Handle /stop command"""
        channel_id = interaction.channel_id
        try:
            progress = self.quiz_controller.get_session_progress(channel_id)
            if progress is None:
                await self.send_info_response(interaction, "No quiz session to stop in this channel.",
                                              "ℹ️ No Active Quiz")
                return

            await self.quiz_controller.stop_session(channel_id)
            embed = discord.Embed(
                title="🛑 Quiz Stopped",
                description=f"**{progress['request'].describe()}** has been ended",
                color=0xff6600
            )
            embed.add_field(
                name="📊 Final Stats",
                value=(
                    f"Answered: {progress['answered']}/{progress['total_questions']}\n"
                    f"Score: {progress['score']}"
                ),
                inline=False
            )
            embed.set_footer(text="Use /quiz to begin a new quiz")
            await interaction.response.send_message(embed=embed)

        except discord.HTTPException as e:
            logger.error(f"Error in stop command: {e}")
            await self.send_error_response(interaction, "Failed to stop quiz", "❌ Quiz Control Error")

    async def handle_stats(self, interaction: discord.Interaction):
        """Handle /stats command"""
        try:
            questions = await asyncio.to_thread(self.store.get_all_questions)
            report = aggregate(questions)
            description = "\n".join(format_report(report))
            if len(description) > EMBED_DESCRIPTION_LIMIT:
                description = description[:EMBED_DESCRIPTION_LIMIT] + "\n… use /export_csv for everything"

            embed = discord.Embed(title="📈 Statistics", description=description, color=0x6699ff)
            await interaction.response.send_message(embed=embed)

        except QuestionStoreError as e:
            logger.error(f"Error reading statistics: {e}")
            await self.send_error_response(interaction, "Statistics could not be loaded", "❌ Statistics Error")

    async def handle_reset_stats(self, interaction: discord.Interaction, category: str, sub_category: str):
        """Handle /reset_stats command"""
        request = build_request(SubCategoryLearningMode.RESET_STATS, category, sub_category)
        await self.start_request(interaction, request)

    async def handle_categories(self, interaction: discord.Interaction, category: Optional[str] = None):
        """Handle /categories command"""
        try:
            if category:
                names = await asyncio.to_thread(self.store.get_subcategories, category)
                title = f"📂 Sub-categories of {category}"
            else:
                names = await asyncio.to_thread(self.store.get_categories)
                title = "📂 Categories"

            if not names:
                await self.send_info_response(interaction, "Nothing found. Import questions with /import_csv.", title)
                return

            description = "\n".join(f"• {name}" for name in names)[:EMBED_DESCRIPTION_LIMIT]
            await interaction.response.send_message(
                embed=discord.Embed(title=title, description=description, color=0x6699ff)
            )

        except QuestionStoreError as e:
            logger.error(f"Error listing categories: {e}")
            await self.send_error_response(interaction, "Categories could not be loaded", "❌ Question Bank Error")

    async def handle_set_threshold(self, interaction: discord.Interaction, value: int):
        """Handle /set_threshold command"""
        result = self.config_manager.set_weak_threshold(value)
        if result['success']:
            await self.send_info_response(interaction, result['user_message'], "✅ Weak Threshold Updated")
        else:
            await self.send_error_response(interaction, result['user_message'], "❌ Configuration Error")

    async def handle_import_csv(self, interaction: discord.Interaction, file: discord.Attachment):
        """Handle /import_csv command"""
        await interaction.response.defer(thinking=True)
        try:
            data = await file.read()
            result = await asyncio.to_thread(self.data_manager.import_csv_bytes, data, file.filename)
        except ImportFatalFailure as e:
            await self.send_error_response(interaction, f"Import failed: {e}", "❌ Import Error")
            return
        except (PersistenceWriteFailure, discord.HTTPException) as e:
            logger.error(f"Import of {file.filename} failed: {e}")
            await self.send_error_response(interaction, "The questions could not be saved. Please try again.",
                                           "❌ Import Error")
            return

        embed = discord.Embed(
            title="📥 Import Complete",
            description=f"Imported **{result['imported']}** questions from `{file.filename}`",
            color=0x00ff00 if not result['skipped'] else 0xffaa00
        )
        if result['skipped']:
            skipped = "\n".join(result['errors'][:5])
            if len(result['errors']) > 5:
                skipped += f"\n... and {len(result['errors']) - 5} more"
            embed.add_field(name=f"⚠️ {result['skipped']} rows skipped", value=f"```\n{skipped[:1000]}\n```",
                            inline=False)
        await interaction.followup.send(embed=embed)

    async def handle_export_csv(self, interaction: discord.Interaction):
        """Handle /export_csv command"""
        try:
            data = await asyncio.to_thread(self.data_manager.export_csv_bytes)
            await interaction.response.send_message(
                "📤 Question bank export",
                file=discord.File(io.BytesIO(data), filename="questions_export.csv")
            )
        except (QuestionStoreError, discord.HTTPException) as e:
            logger.error(f"Export failed: {e}")
            await self.send_error_response(interaction, "Export failed", "❌ Export Error")

    async def send_error_response(self, interaction: discord.Interaction, message: str, title: str = "❌ Error"):
        """Send formatted error response to user"""
        try:
            embed = discord.Embed(
                title=title,
                description=message,
                color=0xff0000
            )
            embed.set_footer(text="If this error persists, try using /help for available commands")

            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException:
            logger.error("Failed to send error response to user")

    async def send_info_response(self, interaction: discord.Interaction, message: str, title: str = "ℹ️ Information"):
        """Send formatted info response to user"""
        try:
            embed = discord.Embed(
                title=title,
                description=message,
                color=0x6699ff
            )

            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException:
            logger.error("Failed to send info response to user")

    async def send_warning_response(self, interaction: discord.Interaction, message: str, title: str = "⚠️ Warning"):
        """Send formatted warning response to user"""
        try:
            embed = discord.Embed(
                title=title,
                description=message,
                color=0xffaa00
            )

            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException:
            logger.error("Failed to send warning response to user")


async def run_bot(token=None, config=None):
    """Run the bot with proper error handling"""
    if not token:
        token = os.getenv('DISCORD_BOT_TOKEN')

    if not token:
        logger.error("No Discord bot token provided")
        return

    bot = QuizBot(config)

    try:
        logger.info("Starting MCQ Trainer Bot...")
        await bot.start(token)
    except discord.LoginFailure:
        logger.error("Invalid bot token provided")
    except discord.HTTPException as e:
        logger.error(f"HTTP error occurred: {e}")
    finally:
        if not bot.is_closed():
            await bot.close()
