"""
Metered OpenAI client wrapper.

Bills each chat completion against an account balance after it returns.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.metering import ConsumptionResult, MeteringService


class ConsumptionRejected(Exception):
    """Raised when a completion could not be billed."""
    def __init__(self, result: ConsumptionResult):
        super().__init__(f"{result.error_kind.value}: {result.message}")
        self.result = result


class MeteredOpenAI:
    """OpenAI client wrapper that meters token usage.

    The completion is requested first and billed afterwards, using the
    provider-reported token counts. Billing failures are loud.
    """

    def __init__(
        self,
        service: MeteringService,
        account: str,
        model: str,
        client: Optional[OpenAI] = None
    ):
        """Initialize metered OpenAI client.

        Args:
            service: Metering service that owns the balances
            account: Account billed for every completion (required)
            model: OpenAI model name (required)
            client: Preconfigured OpenAI client (defaults to ``OpenAI()``)

        Raises:
            ValueError: If account or model is missing/empty
        """
        if not account or not account.strip():
            raise ValueError("account is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.service = service
        self.account = account
        self.model = model
        self.client = client or OpenAI()

    def chat(
        self,
        messages: List[Dict[str, str]],
        work_id: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion and bill its usage.

        Args:
            messages: List of message dictionaries (required)
            work_id: Idempotency key for billing (defaults to the response id)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty, max_tokens exceeds the output
                cap, or the response has no usage
            ConsumptionRejected: If the usage could not be billed
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        if max_tokens is not None and max_tokens > self.service.max_output_units:
            raise ValueError(
                f"max_tokens {max_tokens} exceeds the per-request cap "
                f"of {self.service.max_output_units}"
            )

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        result = self.service.consume(
            account=self.account,
            work_id=work_id or response.id,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens
        )
        if not result.ok:
            raise ConsumptionRejected(result)

        return response
