"""
Parsers for .env files, backed by python-dotenv.
"""
import io
import os
from typing import Dict

from dotenv import dotenv_values

class EnvParser:
    """
    Parser for .env files.
    """
    @staticmethod
    def parse(env_path: str) -> Dict[str, str]:
        """
        Parses an .env file from a path.

        Args:
            env_path (str): Path to the .env file.

        Returns:
            Dict[str, str]: Dictionary of environment variables. Keys declared
            without a value are left out.
        """
        if not os.path.isfile(env_path):
            raise FileNotFoundError(env_path)
        values = dotenv_values(env_path, interpolate=False)
        return {key: value for key, value in values.items() if value is not None}

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses environment variables from a string.
        Handles quotes, comments and escaped characters.
        """
        values = dotenv_values(stream=io.StringIO(content), interpolate=False)
        return {key: value for key, value in values.items() if value is not None}
