"""
Configuration manager for trainer settings and storage locations.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import TrainerSettings


class ConfigManager:
    """Manages quiz selection settings and storage paths."""

    # Default configuration values
    DEFAULT_WEAK_THRESHOLD = 3
    DEFAULT_RANDOM_QUESTION_LIMIT = 1000
    DEFAULT_WRITE_MODE = "optimistic"
    DEFAULT_DATABASE_PATH = "./data/mcq_trainer.db"
    DEFAULT_BUNDLED_CSV_PATH = "./data/questions_database.csv"
    DEFAULT_IMAGE_DIRECTORY = "./data/images/"

    # Validation limits
    MIN_WEAK_THRESHOLD = 1
    MAX_WEAK_THRESHOLD = 50
    MIN_RANDOM_QUESTION_LIMIT = 1
    MAX_RANDOM_QUESTION_LIMIT = 10000
    WRITE_MODES = ("optimistic", "confirm")

    def __init__(self):
        """Initialize ConfigManager with default settings."""
        self.logger = logging.getLogger(__name__)
        self._settings = TrainerSettings()
        self._database_path = self.DEFAULT_DATABASE_PATH
        self._bundled_csv_path = self.DEFAULT_BUNDLED_CSV_PATH
        self._image_directory = self.DEFAULT_IMAGE_DIRECTORY

    def get_settings(self) -> TrainerSettings:
        """
        Get a copy of the current trainer settings.

        Returns:
            TrainerSettings object with current configuration
        """
        return TrainerSettings(
            weak_threshold=self._settings.weak_threshold,
            random_question_limit=self._settings.random_question_limit,
            write_mode=self._settings.write_mode
        )

    @property
    def settings(self) -> TrainerSettings:
        """Live settings object shared with the selection engine."""
        return self._settings

    def _set_bounded_int(self, name: str, label: str, value: Any, minimum: int, maximum: int) -> Dict[str, any]:
        try:
            if not isinstance(value, int) or isinstance(value, bool):
                error_msg = f"{label} must be an integer, got {type(value).__name__}"
                self.logger.error(error_msg)
                return {
                    'success': False,
                    'error': error_msg,
                    'user_message': f"❌ Invalid input: Expected a number, got {type(value).__name__}"
                }

            if value < minimum:
                error_msg = f"{label} must be at least {minimum}"
                self.logger.error(error_msg)
                return {
                    'success': False,
                    'error': error_msg,
                    'user_message': f"❌ {label} too small: Minimum is {minimum}"
                }

            if value > maximum:
                error_msg = f"{label} cannot exceed {maximum}"
                self.logger.error(error_msg)
                return {
                    'success': False,
                    'error': error_msg,
                    'user_message': f"❌ {label} too large: Maximum is {maximum}"
                }

            setattr(self._settings, name, value)
            self.logger.info(f"{label} set to {value}")
            return {
                'success': True,
                'message': f"{label} set to {value}",
                'user_message': f"✅ {label} set to {value}"
            }

        except Exception as e:
            error_msg = f"Unexpected error setting {label.lower()}: {e}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ An unexpected error occurred while setting {label.lower()}"
            }

    def set_weak_threshold(self, threshold: int) -> Dict[str, any]:
        """
        Set the recent-streak threshold below which a question counts as weak.

        Args:
            threshold: Streak length

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        return self._set_bounded_int(
            "weak_threshold", "Weak threshold", threshold,
            self.MIN_WEAK_THRESHOLD, self.MAX_WEAK_THRESHOLD
        )

    def get_weak_threshold(self) -> int:
        return self._settings.weak_threshold

    def set_random_question_limit(self, limit: int) -> Dict[str, any]:
        """Set the cap of the unfiltered random selection."""
        return self._set_bounded_int(
            "random_question_limit", "Random question limit", limit,
            self.MIN_RANDOM_QUESTION_LIMIT, self.MAX_RANDOM_QUESTION_LIMIT
        )

    def get_random_question_limit(self) -> int:
        return self._settings.random_question_limit

    def set_write_mode(self, mode: str) -> Dict[str, any]:
        """
        Set how answer statistics are written.

        "optimistic" advances the quiz before the write completes;
        "confirm" waits for the write and does not advance if it fails.
        """
        if not isinstance(mode, str) or mode.strip().lower() not in self.WRITE_MODES:
            error_msg = f"Write mode must be one of {', '.join(self.WRITE_MODES)}, got {mode!r}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid write mode: choose {' or '.join(self.WRITE_MODES)}"
            }

        self._settings.write_mode = mode.strip().lower()
        self.logger.info(f"Write mode set to {self._settings.write_mode}")
        return {
            'success': True,
            'message': f"Write mode set to {self._settings.write_mode}",
            'user_message': f"✅ Answers will be saved in {self._settings.write_mode} mode"
        }

    def get_write_mode(self) -> str:
        return self._settings.write_mode

    def _set_path(self, attribute: str, label: str, path: str) -> Dict[str, any]:
        if not isinstance(path, str) or not path.strip():
            error_msg = f"{label} must be a non-empty path string"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ {label} cannot be empty"
            }

        try:
            normalized_path = str(Path(path).expanduser().resolve())
        except (OSError, ValueError) as e:
            error_msg = f"Invalid {label.lower()} format: {e}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid path format: {path}"
            }

        setattr(self, attribute, normalized_path)
        self.logger.info(f"{label} set to {normalized_path}")
        return {
            'success': True,
            'message': f"{label} set to {normalized_path}",
            'user_message': f"✅ {label} set to {normalized_path}"
        }

    def set_database_path(self, path: str) -> Dict[str, any]:
        return self._set_path("_database_path", "Database path", path)

    def get_database_path(self) -> str:
        return self._database_path

    def set_bundled_csv_path(self, path: str) -> Dict[str, any]:
        return self._set_path("_bundled_csv_path", "Bundled CSV path", path)

    def get_bundled_csv_path(self) -> str:
        return self._bundled_csv_path

    def set_image_directory(self, directory: str) -> Dict[str, any]:
        return self._set_path("_image_directory", "Image directory", directory)

    def get_image_directory(self) -> str:
        return self._image_directory

    def apply_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Apply the quiz and storage sections of a loaded config.json.

        Args:
            config: Parsed configuration dictionary

        Returns:
            List of user-facing messages for settings that were rejected
        """
        rejected = []
        quiz_config = config.get('quiz', {}) or {}
        storage_config = config.get('storage', {}) or {}

        setters = [
            (quiz_config, 'weak_threshold', self.set_weak_threshold),
            (quiz_config, 'random_question_limit', self.set_random_question_limit),
            (quiz_config, 'write_mode', self.set_write_mode),
            (storage_config, 'database_path', self.set_database_path),
            (storage_config, 'bundled_csv_path', self.set_bundled_csv_path),
            (storage_config, 'image_directory', self.set_image_directory),
        ]
        for section, key, setter in setters:
            if key not in section:
                continue
            result = setter(section[key])
            if not result['success']:
                rejected.append(result['user_message'])

        return rejected

    def reset_to_defaults(self) -> None:
        """Reset all settings to their default values."""
        self._settings.weak_threshold = self.DEFAULT_WEAK_THRESHOLD
        self._settings.random_question_limit = self.DEFAULT_RANDOM_QUESTION_LIMIT
        self._settings.write_mode = self.DEFAULT_WRITE_MODE
        self._database_path = self.DEFAULT_DATABASE_PATH
        self._bundled_csv_path = self.DEFAULT_BUNDLED_CSV_PATH
        self._image_directory = self.DEFAULT_IMAGE_DIRECTORY
        self.logger.info("All settings reset to default values")

    def validate_settings(self) -> Dict[str, Any]:
        """
        Validate current settings and return validation results.

        Returns:
            Dictionary with validation results and any issues found
        """
        validation_result = {
            "valid": True,
            "issues": []
        }

        threshold = self._settings.weak_threshold
        if (not isinstance(threshold, int) or
                threshold < self.MIN_WEAK_THRESHOLD or
                threshold > self.MAX_WEAK_THRESHOLD):
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid weak threshold: {threshold}")

        limit = self._settings.random_question_limit
        if (not isinstance(limit, int) or
                limit < self.MIN_RANDOM_QUESTION_LIMIT or
                limit > self.MAX_RANDOM_QUESTION_LIMIT):
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid random question limit: {limit}")

        if self._settings.write_mode not in self.WRITE_MODES:
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid write mode: {self._settings.write_mode}")

        if not isinstance(self._database_path, str) or not self._database_path.strip():
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid database path: {self._database_path}")

        return validation_result

    def get_configuration_health_check(self) -> Dict[str, any]:
        """
        Check settings plus the storage locations on disk.

        Returns:
            Dictionary with health status, warnings and errors
        """
        health_check = {
            'healthy': True,
            'warnings': [],
            'errors': []
        }

        validation_result = self.validate_settings()
        if not validation_result['valid']:
            health_check['healthy'] = False
            health_check['errors'].extend(f"❌ {issue}" for issue in validation_result['issues'])

        database_dir = Path(self._database_path).parent
        if database_dir.exists() and not os.access(database_dir, os.W_OK):
            health_check['healthy'] = False
            health_check['errors'].append(f"❌ Cannot write to database directory: {database_dir}")

        if not Path(self._bundled_csv_path).exists():
            health_check['warnings'].append(
                f"⚠️ Bundled question file not found: {self._bundled_csv_path}"
            )

        if not Path(self._image_directory).is_dir():
            health_check['warnings'].append(
                f"⚠️ Image directory does not exist: {self._image_directory}"
            )

        return health_check

    def get_settings_summary(self, question_count: Optional[int] = None) -> str:
        """
        Get a formatted summary of current settings.

        Returns:
            Human-readable string describing current settings
        """
        lines = [
            "Trainer Settings:",
            f"• Weak threshold: recent streak below {self._settings.weak_threshold}",
            f"• Random question limit: {self._settings.random_question_limit}",
            f"• Write mode: {self._settings.write_mode}",
            f"• Database: {self._database_path}",
        ]
        if question_count is not None:
            lines.append(f"• Questions in bank: {question_count}")
        return "\n".join(lines)
