"""
Unit tests for SDK layer.

Tests the metered OpenAI client wrapper and its billing behavior.
"""

from unittest.mock import Mock, patch

import pytest

from token_meter.config.loader import LimitsConfig, MeteringConfig
from token_meter.core.metering import ConsumptionState, ErrorKind, MeteringService
from token_meter.sdk.openai_client import ConsumptionRejected, MeteredOpenAI


def _response(response_id="chat_123", prompt_tokens=100, completion_tokens=50):
    response = Mock()
    response.id = response_id
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    response.usage.total_tokens = prompt_tokens + completion_tokens
    return response


class TestMeteredOpenAI:
    """Test MeteredOpenAI client wrapper."""

    @pytest.fixture
    def service(self, store, clock):
        service = MeteringService(
            store,
            config=MeteringConfig(limits=LimitsConfig(max_output_units=500)),
            clock=clock
        )
        service.credit("u1", 1000)
        return service

    @patch('token_meter.sdk.openai_client.OpenAI')
    def test_init_success(self, mock_openai_class, service):
        """Test successful initialization with a default client."""
        mock_openai_class.return_value = Mock()

        client = MeteredOpenAI(service, account="u1", model="gpt-4o-mini")

        assert client.account == "u1"
        assert client.model == "gpt-4o-mini"
        assert client.client is mock_openai_class.return_value

    def test_init_missing_account(self, service):
        with pytest.raises(ValueError, match="account is required"):
            MeteredOpenAI(service, account="", model="gpt-4o-mini", client=Mock())
        with pytest.raises(ValueError, match="account is required"):
            MeteredOpenAI(service, account=None, model="gpt-4o-mini", client=Mock())

    def test_init_missing_model(self, service):
        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI(service, account="u1", model="  ", client=Mock())

    def test_chat_bills_usage(self, service):
        """Test a successful chat call deducts its tokens."""
        openai_client = Mock()
        openai_client.chat.completions.create.return_value = _response()
        client = MeteredOpenAI(service, account="u1", model="gpt-4o-mini", client=openai_client)

        response = client.chat([{"role": "user", "content": "hi"}])

        assert response.id == "chat_123"
        assert service.get_balance("u1") == 850
        assert service.is_settled("chat_123")
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]

    def test_chat_with_explicit_work_id(self, service):
        """Test a caller-supplied work id makes billing idempotent across retries."""
        openai_client = Mock()
        openai_client.chat.completions.create.side_effect = [
            _response("chat_a"), _response("chat_b")
        ]
        client = MeteredOpenAI(service, account="u1", model="gpt-4o-mini", client=openai_client)

        client.chat([{"role": "user", "content": "hi"}], work_id="job-1")
        client.chat([{"role": "user", "content": "hi"}], work_id="job-1")

        assert service.get_balance("u1") == 850

    def test_chat_insufficient_balance_raises(self, service):
        openai_client = Mock()
        openai_client.chat.completions.create.return_value = _response(
            prompt_tokens=900, completion_tokens=200
        )
        client = MeteredOpenAI(service, account="u1", model="gpt-4o-mini", client=openai_client)

        with pytest.raises(ConsumptionRejected) as exc_info:
            client.chat([{"role": "user", "content": "hi"}])

        assert exc_info.value.result.state == ConsumptionState.REJECTED_BALANCE
        assert exc_info.value.result.error_kind == ErrorKind.INSUFFICIENT_BALANCE
        assert service.get_balance("u1") == 1000

    def test_chat_refuses_max_tokens_over_cap(self, service):
        """Test oversized requests are refused before calling the API."""
        openai_client = Mock()
        client = MeteredOpenAI(service, account="u1", model="gpt-4o-mini", client=openai_client)

        with pytest.raises(ValueError, match="max_tokens 501"):
            client.chat([{"role": "user", "content": "hi"}], max_tokens=501)

        openai_client.chat.completions.create.assert_not_called()

    def test_chat_empty_messages(self, service):
        client = MeteredOpenAI(service, account="u1", model="gpt-4o-mini", client=Mock())
        with pytest.raises(ValueError, match="messages is required"):
            client.chat([])

    def test_chat_missing_usage(self, service):
        openai_client = Mock()
        response = _response()
        response.usage = None
        openai_client.chat.completions.create.return_value = response
        client = MeteredOpenAI(service, account="u1", model="gpt-4o-mini", client=openai_client)

        with pytest.raises(ValueError, match="missing usage"):
            client.chat([{"role": "user", "content": "hi"}])
        assert service.get_balance("u1") == 1000

    def test_api_error_propagates_without_billing(self, service):
        openai_client = Mock()
        openai_client.chat.completions.create.side_effect = RuntimeError("API down")
        client = MeteredOpenAI(service, account="u1", model="gpt-4o-mini", client=openai_client)

        with pytest.raises(RuntimeError, match="API down"):
            client.chat([{"role": "user", "content": "hi"}])
        assert service.get_balance("u1") == 1000
