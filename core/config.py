"""
Configuration management using python-dotenv for environment variables
"""
import os
from typing import Any, Dict, Optional
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(dotenv_path=env_path)


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name, '').strip()
    return int(value) if value else None


def _optional_float(name: str) -> Optional[float]:
    value = os.getenv(name, '').strip()
    return float(value) if value else None


class ENVConfig:
    """Environment-specific configuration for the model endpoint and storage"""

    @property
    def model_api_config(self) -> Dict[str, Any]:
        """Get OpenAI-compatible chat-completions endpoint configuration"""
        return {
            'api_endpoint': os.getenv('MODEL_API_ENDPOINT', 'http://127.0.0.1:1234/v1/chat/completions'),
            'model_name': os.getenv('MODEL_NAME', 'qwen3-vl-30b-a3b-thinking'),
            'api_key': os.getenv('MODEL_API_KEY', ''),
            'max_tokens': _optional_int('MODEL_MAX_TOKENS'),
            'temperature': _optional_float('MODEL_TEMPERATURE'),
            'request_timeout': int(os.getenv('MODEL_REQUEST_TIMEOUT', '600'))
        }

    @property
    def storage_config(self) -> Dict[str, str]:
        """Get image storage configuration"""
        default_dir = Path(__file__).parent.parent / 'assets' / 'uploads'
        return {
            'upload_dir': os.getenv('UPLOAD_DIR', str(default_dir))
        }


class AppConfig:
    """Application-level configuration settings"""

    @property
    def server_config(self) -> Dict[str, Any]:
        """Get server configuration"""
        return {
            'host': os.getenv('SERVER_HOST', 'localhost'),
            'port': int(os.getenv('SERVER_PORT', '8080')),
            'debug': os.getenv('DEBUG', 'False').lower() == 'true',
            'log_level': 'debug' if os.getenv('DEBUG') else 'info'
        }

    @property
    def logging_config(self) -> Dict[str, Any]:
        """Get logging configuration

        LOG_LEVELS overrides single layers, e.g. "genai=DEBUG,service=WARNING"
        """
        debug = os.getenv('DEBUG', 'False').lower() == 'true'
        layer_levels = {}
        for item in os.getenv('LOG_LEVELS', '').split(','):
            if '=' in item:
                layer, level = item.split('=', 1)
                layer_levels[layer.strip()] = level.strip().upper()
        return {
            'level': os.getenv('LOG_LEVEL', 'DEBUG' if debug else 'INFO').upper(),
            'layer_levels': layer_levels,
            'to_file': os.getenv('LOG_TO_FILE', 'false').lower() == 'true',
            'log_dir': os.getenv('LOG_DIR', str(Path(__file__).parent.parent / 'logs')),
            'max_bytes': int(os.getenv('LOG_MAX_BYTES', str(10 * 1024 * 1024))),
            'backup_count': int(os.getenv('LOG_BACKUP_COUNT', '5'))
        }

    @property
    def cors_config(self) -> Dict[str, Any]:
        """Get CORS configuration"""
        return {
            'allow_origins': os.getenv('CORS_ORIGINS', '*').split(','),
            'allow_methods': os.getenv('CORS_METHODS', 'GET,POST,PUT,DELETE,OPTIONS').split(','),
            'allow_headers': os.getenv('CORS_HEADERS', '*').split(',')
        }


# Create singleton instances
env_config = ENVConfig()
app_config = AppConfig()
