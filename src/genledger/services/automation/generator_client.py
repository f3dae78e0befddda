"""Automation bridge client for re-issuing prompts into the generator page."""

from typing import Optional, Protocol

import httpx
import structlog

from genledger.services.exceptions import GeneratorRejectedError, GeneratorTransportError

logger = structlog.get_logger()


class Generator(Protocol):
    """Collaborator that submits a prompt to the remote generator."""

    async def send_to_generator(self, prompt_text: str, is_raw_mode: bool) -> None: ...


class HttpGeneratorClient:
    """Submits prompts through the page automation bridge over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize bridge client.

        Args:
            base_url: Bridge root URL (from AUTOMATION_BRIDGE_URL env var)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def send_to_generator(self, prompt_text: str, is_raw_mode: bool) -> None:
        """Ask the bridge to type ``prompt_text`` into the generator and submit it.

        Raises:
            GeneratorTransportError: Network timeout, connection failure, 429 or 5xx
            GeneratorRejectedError: Bridge refused the prompt (other 4xx)
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/generate",
                    json={"prompt": prompt_text, "raw_mode": is_raw_mode},
                )

                # Error classification
                if response.status_code == 429:
                    raise GeneratorTransportError(f"Bridge busy (429): {response.text}")
                elif response.status_code >= 500:
                    raise GeneratorTransportError(
                        f"Bridge unavailable ({response.status_code}): {response.text}"
                    )
                elif response.status_code >= 400:
                    raise GeneratorRejectedError(
                        f"Bridge rejected prompt ({response.status_code}): {response.text}"
                    )

                logger.info("generator.prompt_sent", raw_mode=is_raw_mode, chars=len(prompt_text))

        except httpx.TimeoutException as e:
            raise GeneratorTransportError(f"Request timeout after {self.timeout}s: {e}")
        except httpx.HTTPError as e:
            raise GeneratorTransportError(f"Network error: {e}")
