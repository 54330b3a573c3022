"""Utility modules for Lab Hardener."""

from lab_hardener.utils.command import BaseExecutor, CommandExecutor
from lab_hardener.utils.file import FileManager
from lab_hardener.utils.validation import Validator

__all__ = ["BaseExecutor", "CommandExecutor", "FileManager", "Validator"]
