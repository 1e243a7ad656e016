"""
Managers for handling environment variables and .env file resolution.
"""
import logging
import os
from typing import Dict, Mapping, Optional, Sequence
from ..PARSERS.env_parser import EnvParser

logger = logging.getLogger(__name__)

class EnvironmentManager:
    """
    Builds the variable mapping used for interpolation from ordered layers.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        """
        self.base_dir = base_dir
        self.parser = EnvParser()

    def get_merged_environment(self,
                               env_files: Sequence[str],
                               base_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Merges a base mapping (usually the process environment) with .env files.
        Later files override earlier ones, and files override the base.

        :param env_files: Paths to .env files, in precedence order.
        :param base_env: Mapping that sits beneath every file.
        :return: A dictionary containing the merged environment variables.
        :raises NotFoundError: If an env file is missing.
        """
        merged_env = dict(base_env or {})

        for env_file in env_files:
            file_path = env_file if os.path.isabs(env_file) else os.path.join(self.base_dir, env_file)
            file_env = self.parser.parse(file_path)
            logger.debug("Loaded %d variables from %s", len(file_env), file_path)
            merged_env.update(file_env)

        return merged_env
