import re
import time
import asyncio
import logging
from typing import Dict, Any, List, Type, TypeVar

from langchain_ollama import ChatOllama, OllamaEmbeddings
from langchain_core.messages import HumanMessage
from pydantic import BaseModel, ValidationError
import httpx

from core.errors import OracleError

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _extract_json(content: str) -> str:
    """
    Extract JSON from LLM response, stripping markdown code blocks if present.
    """
    content = content.strip()

    # Remove markdown code blocks (```json ... ``` or ``` ... ```)
    pattern = r'^```(?:json)?\s*\n?(.*?)\n?```$'
    match = re.match(pattern, content, re.DOTALL)
    if match:
        return match.group(1).strip()

    # Fall back to the outermost JSON object in the content
    object_match = re.search(r'\{.*\}', content, re.DOTALL)
    if object_match:
        return object_match.group(0)

    return content


def _build_prompt(text: str, instructions: str, schema: Type[BaseModel]) -> str:
    fields = ", ".join(schema.model_fields)
    return f"""{instructions}

TEXT:
{text}

Return ONLY a JSON object with the keys: {fields}.
JSON:"""


class OllamaClient:
    """
    LangChain-based Ollama client used as the pipeline's oracle.
    Every structured call is validated against a pydantic schema.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        embed_model: str = "nomic-embed-text",
        temperature: float = 0.1,
        generate_temperature: float = 0.4,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 120.0,
    ):
        # ChatOllama uses Ollama's native API, not OpenAI-compatible /v1 endpoint
        if base_url.endswith("/v1"):
            base_url = base_url[:-3]
        elif base_url.endswith("/v1/"):
            base_url = base_url[:-4]

        self.base_url = base_url.rstrip('/')
        self.model = model
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout

        self.llm = ChatOllama(
            base_url=self.base_url,
            model=model,
            temperature=temperature,
            num_ctx=4096,
            format="json",
        )
        self.generator = ChatOllama(
            base_url=self.base_url,
            model=model,
            temperature=generate_temperature,
            num_ctx=8192,
            format="json",
        )
        self.embeddings = OllamaEmbeddings(base_url=self.base_url, model=embed_model)

    async def _invoke_with_retry(self, llm: ChatOllama, messages: List[HumanMessage]) -> Any:
        """
        Invoke LLM with retry logic for connection failures.
        """
        last_exception = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.wait_for(llm.ainvoke(messages), timeout=self.timeout)

            except asyncio.TimeoutError:
                last_exception = TimeoutError(f"Request timed out after {self.timeout}s")
                logger.warning(f"Attempt {attempt}/{self.max_retries}: Timeout, retrying...")

            except Exception as e:
                last_exception = e
                error_msg = str(e)

                if "connection" in error_msg.lower() or "connect" in error_msg.lower():
                    logger.warning(
                        f"Attempt {attempt}/{self.max_retries}: Connection error - {error_msg} (base_url={self.base_url}, model={self.model})"
                    )
                else:
                    raise

            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay * attempt)

        raise last_exception or Exception("All connection attempts failed")

    async def evaluate(self, prompt: str, *, creative: bool = False) -> Dict[str, Any]:
        """
        Evaluate a prompt and return the response with metadata.
        """
        start = time.time()

        llm = self.generator if creative else self.llm
        response = await self._invoke_with_retry(llm, [HumanMessage(content=prompt)])

        latency_ms = int((time.time() - start) * 1000)

        return {
            "raw": response,
            "content": response.content,
            "latency_ms": latency_ms,
        }

    async def _structured(
        self,
        text: str,
        instructions: str,
        schema: Type[SchemaT],
        creative: bool,
    ) -> SchemaT:
        prompt = _build_prompt(text, instructions, schema)
        try:
            response = await self.evaluate(prompt, creative=creative)
        except Exception as e:
            raise OracleError(f"Oracle call failed: {e}") from e

        content = response["content"]
        if not isinstance(content, str) or not content.strip():
            raise OracleError("Oracle returned an empty response")

        logger.debug(f"Oracle response in {response['latency_ms']}ms: {content[:300]}")

        try:
            return schema.model_validate_json(_extract_json(content))
        except ValidationError as e:
            raise OracleError(
                f"Oracle response failed {schema.__name__} validation: {e.error_count()} error(s)"
            ) from e

    async def classify(self, text: str, instructions: str, schema: Type[SchemaT]) -> SchemaT:
        """Short deterministic judgment about text."""
        return await self._structured(text, instructions, schema, creative=False)

    async def generate(self, text: str, instructions: str, schema: Type[SchemaT]) -> SchemaT:
        """Longer structured artifact built from text."""
        return await self._structured(text, instructions, schema, creative=True)

    async def embed(self, text: str) -> List[float]:
        try:
            return await asyncio.wait_for(
                self.embeddings.aembed_query(text), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise OracleError(f"Embedding timed out after {self.timeout}s") from e

    async def health_check(self) -> bool:
        """
        Check if the Ollama server is reachable by calling /api/tags.
        """
        url = f"{self.base_url}/api/tags"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(url)
                if resp.status_code == 200:
                    return True
                logger.error(f"Ollama health check failed: {resp.status_code} {resp.text}")
                return False
        except httpx.HTTPError as e:
            logger.error(f"Ollama health check error: {e} (url={url})")
            return False
