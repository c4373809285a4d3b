from __future__ import annotations

from prev_core.providers.base import ErrorCode, RetryPolicy
from prev_core.providers.openai import OpenAIProvider, _require_sdk, classify_openai_error

DEFAULT_API_VERSION = "2024-02-01"


class AzureOpenAIProvider(OpenAIProvider):
    """Azure OpenAI: the model name is the deployment name."""

    NAME = "azure"
    MODEL = ""

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        deployment: str,
        api_version: str = DEFAULT_API_VERSION,
        retry: RetryPolicy | None = None,
        timeout: float = 0,
    ):
        if not endpoint:
            raise ValueError("Azure OpenAI requires an endpoint (AZURE_OPENAI_ENDPOINT).")
        if not deployment:
            raise ValueError("Azure OpenAI requires a deployment name (AZURE_OPENAI_DEPLOYMENT).")
        # Skip OpenAIProvider.__init__: the client type differs.
        super(OpenAIProvider, self).__init__(model=deployment, retry=retry, timeout=timeout)
        sdk = _require_sdk()
        kwargs: dict = {
            "api_key": api_key,
            "azure_endpoint": endpoint,
            "api_version": api_version or DEFAULT_API_VERSION,
            "max_retries": 0,
        }
        if timeout:
            kwargs["timeout"] = timeout
        self.client = sdk.AzureOpenAI(**kwargs)

    def _classify(self, exc: Exception) -> ErrorCode:
        return classify_openai_error(exc)
