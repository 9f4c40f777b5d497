import pytest

from moonshot_core.domain.exceptions import ValidationError
from moonshot_core.providers import MoonshotClient, create_client
from moonshot_core.providers.moonshot_client import normalize_options
from moonshot_core.providers.registry import MOONSHOT_CONFIG


class SettingsStub:
    moonshot_api_key = "sk-test-key-1234567890"
    moonshot_base_url = "https://api.moonshot.cn/v1"
    default_model = "chat"
    default_temperature = 0.3
    http_timeout = 1.0
    stream_timeout = 1.0
    stream_read_timeout = 10.0
    max_retries = 2
    retry_initial_delay = 1.0
    retry_max_delay = 4.0
    retry_jitter = True


def test_registry_resolves_logical_names():
    assert MOONSHOT_CONFIG.resolve("chat") == "moonshot-v1-8k"
    assert MOONSHOT_CONFIG.resolve("chat-128k") == "moonshot-v1-128k"
    assert MOONSHOT_CONFIG.resolve("kimi-k2") == "kimi-k2-turbo-preview"
    assert MOONSHOT_CONFIG.resolve("moonshot-v1-32k") == "moonshot-v1-32k"


def test_build_payload_defaults_and_local_options():
    client = MoonshotClient(SettingsStub())
    payload = client.build_payload(
        [{"role": "user", "content": "hi"}],
        {"timeout": 5, "n": 2, "tools": [{"type": "function", "function": {"name": "f"}}], "top_p": None},
    )
    assert payload["model"] == "moonshot-v1-8k"
    assert payload["temperature"] == 0.3
    assert payload["stream"] is False
    assert payload["n"] == 2
    assert payload["tools"][0]["function"]["name"] == "f"
    assert "timeout" not in payload
    assert "top_p" not in payload


def test_registry_default_temperature_applies_to_logical_models():
    client = MoonshotClient(SettingsStub())
    messages = [{"role": "user", "content": "hi"}]
    assert client.build_payload(messages, {"model": "kimi-k2"})["temperature"] == 0.6
    assert client.build_payload(messages, {"model": "kimi-k2", "temperature": 0.2})["temperature"] == 0.2
    assert client.build_payload(messages, {"model": "custom-model"})["temperature"] == 0.3


def test_normalize_options():
    assert normalize_options({"temperature": 3})["temperature"] == 1
    assert normalize_options({"tool_choice": "required"})["tool_choice"] == "auto"
    assert normalize_options({"tool_choice": "sometimes"})["tool_choice"] == "auto"
    assert normalize_options({"tool_choice": "none"})["tool_choice"] == "none"
    forced = {"type": "function", "function": {"name": "f"}}
    assert normalize_options({"tool_choice": forced})["tool_choice"] == forced
    with pytest.raises(ValidationError):
        normalize_options({"temperature": 0, "n": 2})
    assert normalize_options({"temperature": 0, "n": 2}, strict_choices=False)["n"] == 1


def test_dispatcher_is_built_from_settings():
    client = MoonshotClient(SettingsStub(), dialogue_tag="abc")
    dispatcher = client.dispatcher
    assert dispatcher.policy.max_retries == 2
    assert dispatcher.policy.max_delay == 4.0
    assert dispatcher._headers()["tag"] == "abc"


def test_dialogue_tag_is_generated():
    first, second = MoonshotClient(SettingsStub()), MoonshotClient(SettingsStub())
    assert first.dialogue_tag.startswith("moonshot-")
    assert first.dialogue_tag != second.dialogue_tag


def test_create_client_uses_given_settings():
    client = create_client(dialogue_tag="x", cfg=SettingsStub())
    assert isinstance(client, MoonshotClient)
    assert client.dialogue_tag == "x"
