"""
Gemini API client wrapper.
Provides a thin wrapper around the Google GenAI SDK for chatting about exported stock data.
"""

from typing import List, Optional

import httpx
from google import genai
from google.genai import errors, types
from loguru import logger

from research_club.core.config import settings

API_VERSION = "v1beta"

SYSTEM_PROMPT_TEMPLATE = """You are a financial data analyst assistant. You have access to stock market data in CSV format.

Available data:
{context}

Please analyze this data and provide insights about:
- Price trends and patterns
- Volume analysis
- Volatility indicators
- Potential anomalies or unusual patterns
- Correlations between different metrics

Be specific and reference actual data points when possible. Format your response clearly with bullet points or numbered lists."""


class GeminiError(Exception):
    """Custom exception for Gemini-related errors."""
    pass


class GeminiAuthError(GeminiError):
    def __init__(self, message: str = "Invalid Gemini API key"):
        super().__init__(message)


class GeminiBadRequestError(GeminiError):
    pass


class GeminiRateLimitError(GeminiError):
    def __init__(self, message: str = "Rate limit exceeded. Please try again later."):
        super().__init__(message)


class GeminiContentBlockedError(GeminiError):
    def __init__(self, message: str = "Content was blocked by Gemini safety filters"):
        super().__init__(message)


class GeminiServiceError(GeminiError):
    """Transport failures, server errors and undecodable responses."""
    pass


def build_system_prompt(context: str, custom_instruction: Optional[str] = None) -> str:
    """Frame the data context as the system instruction for the model."""
    prompt = SYSTEM_PROMPT_TEMPLATE.format(context=context)
    if custom_instruction:
        prompt += f"\n\nAdditional instructions: {custom_instruction}"
    return prompt


def _is_safety_finish(finish_reason) -> bool:
    return str(getattr(finish_reason, "value", finish_reason)) == "SAFETY"


class GeminiClient:
    """
    Wrapper around Google GenAI SDK for Gemini API.
    Handles authentication and maps SDK failures onto GeminiError subclasses.
    Requests are never retried.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        """
        Initialize Gemini client.

        Args:
            api_key: Gemini API key (defaults to GEMINI_API_KEY)
            model: Model name to use (defaults to GEMINI_MODEL)
            base_url: API base URL (defaults to GEMINI_BASE_URL)
        """
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.base_url = base_url or settings.gemini_base_url
        self._client = None

    def _get_client(self):
        """Lazy initialization of the Gemini client."""
        if self._client is None:
            if not self.api_key:
                raise GeminiAuthError(
                    "Gemini API key not set. Save one with 'credentials set gemini' or set GEMINI_API_KEY."
                )
            self._client = genai.Client(
                api_key=self.api_key,
                http_options=types.HttpOptions(base_url=self.base_url, api_version=API_VERSION),
            )
            logger.debug("Gemini client initialized")
        return self._client

    @staticmethod
    def _translate_api_error(error: errors.APIError) -> GeminiError:
        code = getattr(error, "code", None)
        message = getattr(error, "message", None) or str(error)
        status = getattr(error, "status", None) or ""

        if code in (401, 403) or status == "UNAUTHENTICATED":
            return GeminiAuthError()
        if code == 429:
            return GeminiRateLimitError()
        if code == 400:
            if "api key" in message.lower():
                return GeminiAuthError()
            return GeminiBadRequestError(f"Bad Request: {message}")
        if code == 404:
            return GeminiBadRequestError("Endpoint not found (404). Check API URL and model name.")
        if isinstance(error, errors.ClientError):
            return GeminiBadRequestError(f"HTTP {code}: {message}")
        return GeminiServiceError(f"HTTP {code}: {message}")

    def send_message(
        self,
        user_message: str,
        context: str,
        history: Optional[List[types.Content]] = None,
        system_instruction: Optional[str] = None,
    ) -> str:
        """
        Send one user turn to Gemini.

        Args:
            user_message: The new user question
            context: Data context injected into the system instruction
            history: Prior conversation turns, oldest first
            system_instruction: Optional extra instructions appended to the framing text

        Returns:
            The model's reply text

        Raises:
            GeminiError: If the request fails or the reply is unusable
        """
        client = self._get_client()

        contents = list(history or [])
        contents.append(types.Content(role="user", parts=[types.Part(text=user_message)]))
        config = types.GenerateContentConfig(
            system_instruction=build_system_prompt(context, system_instruction)
        )

        logger.debug(
            f"Gemini request: model={self.model} history_turns={len(contents) - 1} "
            f"context_chars={len(context)}"
        )

        try:
            response = client.models.generate_content(
                model=self.model,
                contents=contents,
                config=config,
            )
        except errors.APIError as e:
            logger.error(f"Gemini API error: {e}")
            raise self._translate_api_error(e) from e
        except httpx.HTTPError as e:
            logger.error(f"Gemini network error: {e}")
            raise GeminiServiceError(f"Network error: {e}") from e

        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            logger.warning(f"Gemini blocked the prompt: {feedback.block_reason}")
            raise GeminiContentBlockedError()

        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            logger.error(f"Gemini returned no candidates: {str(response)[:500]}")
            raise GeminiServiceError("Invalid response from Gemini API")

        candidate = candidates[0]
        content = getattr(candidate, "content", None)
        parts = getattr(content, "parts", None) or []
        text = "".join(part.text for part in parts if getattr(part, "text", None))

        if not text:
            if _is_safety_finish(getattr(candidate, "finish_reason", None)):
                logger.warning("Gemini stopped the reply for safety reasons")
                raise GeminiContentBlockedError()
            logger.error(f"Gemini candidate had no text: {str(candidate)[:500]}")
            raise GeminiServiceError("Invalid response from Gemini API")

        logger.debug(f"Gemini reply: {text[:200]}")
        return text

    def list_models(self) -> List[str]:
        """
        List model names visible to the configured key.

        Raises:
            GeminiError: If the listing fails
        """
        client = self._get_client()
        try:
            return [model.name for model in client.models.list()]
        except errors.APIError as e:
            raise self._translate_api_error(e) from e
        except httpx.HTTPError as e:
            raise GeminiServiceError(f"Network error: {e}") from e

    def is_available(self) -> bool:
        """
        Check if Gemini is configured.

        Returns:
            True if an API key is present, False otherwise
        """
        return bool(self.api_key)
