import os
import json
from pathlib import Path
from dotenv import load_dotenv
from .logging_config import setup_app_logging
import logging

# Load environment variables from .env file
load_dotenv()

# Get the config directory path (where this file is located)
CONFIG_DIR = Path(__file__).parent

# <<< Define PROJECT_ROOT based on CONFIG_DIR >>>
PROJECT_ROOT = CONFIG_DIR.parent

# Prompt templates used by the workflow stages live next to config.json
PROMPTS_DIR = CONFIG_DIR / 'prompts'

# Load configuration from config.json
config_path = CONFIG_DIR / 'config.json'
with open(config_path, 'r', encoding='utf-8') as f:
    CONFIG = json.load(f)

# CONFIG is the in-memory runtime representation of config.json.
# We add PROJECT_ROOT and derived absolute paths so other modules never build paths themselves.
CONFIG['project_root'] = str(PROJECT_ROOT)

if 'paths' not in CONFIG:
    CONFIG['paths'] = {}

user_data_base_name = CONFIG.get('paths', {}).get('user_data_base_dir_name', 'user_data')
sessions_filename = CONFIG.get('paths', {}).get('sessions_filename', 'sessions.json')

CONFIG['paths']['user_data_full_path'] = str(PROJECT_ROOT / user_data_base_name)
CONFIG['paths']['sessions_full_path'] = str(PROJECT_ROOT / user_data_base_name / sessions_filename)

def validate_config():
    """Validate that all required configuration sections are present.

    API keys are not checked here: the generation and speech client factories
    validate them when a real client is built, which keeps the package importable
    for tests and for runs that use the mock collaborators.
    """
    required_sections = ['llm', 'workflow', 'memory']
    for section in required_sections:
        if section not in CONFIG:
            raise ValueError(f"Missing configuration section: {section}")

    if 'generation' not in CONFIG['llm'].get('models', {}):
        raise ValueError("Missing configuration for LLM model: generation")

    stages = CONFIG['workflow'].get('stages') or []
    if not stages:
        raise ValueError("Workflow configuration must declare at least one stage")

    stage_ids = [stage.get('id') for stage in stages]
    if len(stage_ids) != len(set(stage_ids)):
        raise ValueError(f"Workflow stage ids must be unique: {stage_ids}")

# Validate configuration on module import
validate_config()

# --- Helper function to get config value from CONFIG or environment variable ---
def get_config_value(json_keys: list, env_var_name: str, default_value: any = None):
    """
    Retrieves a configuration value.
    Priority:
    1. Environment variable (if env_var_name is provided and variable is set).
    2. Value from CONFIG dictionary (using json_keys).
    3. default_value.
    """
    # Try environment variable first
    if env_var_name:
        env_value = os.getenv(env_var_name)
        if env_value is not None:
            # Attempt to match type of default_value if it's int or bool
            if isinstance(default_value, bool):
                if env_value.lower() == 'true': return True
                if env_value.lower() == 'false': return False
            elif isinstance(default_value, int):
                try:
                    return int(env_value)
                except ValueError:
                    pass # Fall through to JSON or default if not a valid int
            return env_value # Return as string if no type match or not int/bool

    # Try from CONFIG dictionary (loaded from JSON)
    current_level = CONFIG
    try:
        for key in json_keys:
            current_level = current_level[key]
        if isinstance(default_value, bool) and isinstance(current_level, bool):
            return current_level
        if isinstance(default_value, int) and isinstance(current_level, int):
            return current_level
        if isinstance(current_level, (str, int, bool, float, list, dict)): # Check if it's a typical JSON type
             return current_level
    except (KeyError, TypeError):
        pass # Key not found or CONFIG structure not as expected, fall through to default

    # Fallback to default value
    return default_value

# --- Workflow tunables that operators commonly override per deployment ---
CONFIG['workflow']['checkpoint_timeout_seconds'] = get_config_value(
    ['workflow', 'checkpoint_timeout_seconds'], 'CHECKPOINT_TIMEOUT_SECONDS', 30
)
CONFIG['workflow']['generation_timeout_seconds'] = get_config_value(
    ['workflow', 'generation_timeout_seconds'], 'GENERATION_TIMEOUT_SECONDS', 60
)
CONFIG['paths']['sessions_full_path'] = get_config_value(
    ['paths', 'sessions_full_path'], 'SESSIONS_FILE_PATH', CONFIG['paths']['sessions_full_path']
)

# --- Logging Configuration ---
# Environment variables take precedence over config.json, which takes precedence over defaults.
CONFIG['logging'] = {
    'level': get_config_value(['logging', 'level'], 'LOG_LEVEL', 'INFO'),
    'file_path': get_config_value(['logging', 'file_path'], 'LOG_FILE_PATH', 'logs/sahayak.log'),
    'max_bytes': get_config_value(['logging', 'max_bytes'], 'LOG_MAX_BYTES', 5*1024*1024), # 5MB
    'backup_count': get_config_value(['logging', 'backup_count'], 'LOG_BACKUP_COUNT', 3),
    'format': get_config_value(
        ['logging', 'format'],
        'LOG_FORMAT',
        '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s'
    ),
    'date_format': get_config_value(
        ['logging', 'date_format'],
        'LOG_DATE_FORMAT',
        '%Y-%m-%d %H:%M:%S'
    )
}

# --- Setup Application Logging ---
setup_app_logging(config=CONFIG.get('logging'))

config_init_logger = logging.getLogger(__name__) # Get logger for this module AFTER logging is setup
config_init_logger.info("[config_init] Logging initialized from config/__init__.py using setup_app_logging.")


def load_prompt(name: str) -> str:
    """
    Read a prompt template from `config/prompts/<name>.txt`.

    Templates are plain `str.format` strings. Literal braces inside a template must be
    doubled. A missing template is a deployment error, so the FileNotFoundError is
    re-raised with a hint about where the file is expected.
    """
    prompt_path = PROMPTS_DIR / f'{name}.txt'
    try:
        with open(prompt_path, 'r', encoding='utf-8') as f:
            return f.read().strip()
    except FileNotFoundError:
        raise FileNotFoundError(
            f"Prompt template not found: {prompt_path}\n"
            f"Please ensure {name}.txt exists in the config/prompts directory."
        )
