from typing import Optional
from core.prompt_tree import PromptTree
from core.image_source import ImageSource
from core.result_store import ResultHistoryStore
from .analysis_service import AnalysisService, ProgressSink
from . import logger


class ServiceFactory:
    """Factory for creating service instances"""

    @classmethod
    def create_analysis_service(
        cls,
        module_name: str = 'analysis',
        prompt_tree: Optional[PromptTree] = None,
        image_source: Optional[ImageSource] = None,
        result_store: Optional[ResultHistoryStore] = None,
        progress_sink: Optional[ProgressSink] = None,
        **kwargs
    ) -> AnalysisService:
        """Create the prompt-tree analysis service

        Args:
            module_name: Name of the module requesting service (defaults to 'analysis')
            prompt_tree: Prompt forest to run (defaults to the built-in prompt set)
            image_source: Image registry (defaults to an empty one)
            result_store: Result history store (defaults to an empty one)
            progress_sink: Receiver of progress updates (defaults to logging)
            **kwargs: Passed through to BaseService (settings_loader, provider_factory)

        Returns:
            AnalysisService: Configured service instance
        """
        try:
            logger.debug(f"Creating AnalysisService for {module_name}")
            return AnalysisService(
                module_name=module_name,
                prompt_tree=prompt_tree,
                image_source=image_source,
                result_store=result_store,
                progress_sink=progress_sink,
                **kwargs
            )
        except Exception as e:
            logger.error(f"Failed to create AnalysisService: {str(e)}")
            raise
