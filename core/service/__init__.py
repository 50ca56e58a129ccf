from typing import Callable, Dict, Optional
from common.logger import setup_logger
from genai.models import ModelSettings
from genai.models.providers import LLMAPIProvider, create_model_provider

logger = setup_logger('service')

ProviderFactory = Callable[[ModelSettings], LLMAPIProvider]


class BaseService:
    """Base service with common functionality"""

    def __init__(
        self,
        module_name: str,
        settings_loader: Optional[Callable[[], ModelSettings]] = None,
        provider_factory: Optional[ProviderFactory] = None
    ):
        """Initialize base service

        Args:
            module_name: Name of the module using this service
            settings_loader: Returns current model settings (default: environment config)
            provider_factory: Builds a provider for given settings (default: create_model_provider)
        """
        self.module_name = module_name
        self._settings_loader = settings_loader or ModelSettings.from_config
        self._provider_factory = provider_factory or create_model_provider
        self._model_providers: Dict[ModelSettings, LLMAPIProvider] = {}

    def load_settings(self) -> ModelSettings:
        """Read model settings; called once at the start of every operation"""
        try:
            return self._settings_loader()
        except Exception as e:
            logger.error(f"Failed to load model settings: {str(e)}")
            raise

    def _get_model_provider(self, settings: Optional[ModelSettings] = None) -> LLMAPIProvider:
        """Get or create the model provider for the given (or current) settings

        Returns:
            LLMAPIProvider: Provider bound to those settings
        """
        settings = settings or self.load_settings()
        try:
            if provider := self._model_providers.get(settings):
                logger.debug(f"Using cached provider for model {settings.model_name}")
                return provider

            provider = self._provider_factory(settings)
            self._model_providers[settings] = provider
            logger.debug(f"Created provider for model {settings.model_name} at {settings.api_endpoint}")
            return provider

        except Exception as e:
            logger.error(f"Failed to get provider for {settings.model_name}: {str(e)}")
            raise
