from pathlib import Path
import dotenv
import os
from openai import OpenAI


ROOT = Path(__file__).parent.parent

dotenv.load_dotenv(ROOT / '.env')


# Constants
VALID_ENVIRONMENTS = ['production', 'staging', 'local']
DEFAULT_ENVIRONMENT = 'staging'
DEFAULT_CONFIG_PATH = ROOT / 'instintel.yaml'

def get_openai_client(environment: str = DEFAULT_ENVIRONMENT) -> OpenAI:
    """Get OpenAI client for the given environment"""
    api_key = os.environ.get(f'OPENAI_API_KEY_{environment.upper()}')
    if not api_key:
        api_key = os.environ.get('OPENAI_API_KEY')
    if not api_key:
        raise ValueError(f'Missing OPENAI_API_KEY_{environment.upper()} or OPENAI_API_KEY environment variable')
    return OpenAI(api_key=api_key)
