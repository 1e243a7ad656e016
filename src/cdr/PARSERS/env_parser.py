"""
Parsers for .env files, supporting quotes, comments and ``export`` prefixes.
"""
import io
import os
from typing import Dict

from dotenv import dotenv_values

from ..exceptions import NotFoundError

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
            Dict[str, str]: Dictionary of environment variables.

        Raises:
            NotFoundError: If the file does not exist.
        """
        if not os.path.isfile(env_path):
            raise NotFoundError("environment file not found", origin=env_path)
        with open(env_path, 'r') as f:
            content = f.read()
        return EnvParser.parse_from_string(content)

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses environment variables from a string.
        Lines without a value (``KEY`` alone) are skipped; values are taken
        literally, without expanding ``${...}`` references.
        """
        values = dotenv_values(stream=io.StringIO(content), interpolate=False)
        return {key: value for key, value in values.items() if value is not None}
