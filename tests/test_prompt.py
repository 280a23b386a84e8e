"""Tests for the conversation model and prompt formatters."""

import pytest

from parley_errors import TemplateError
from parley_prompt import (
    ChatMessage,
    History,
    Role,
    format_chat_chatml,
    format_chat_llama2,
    format_chat_llama3,
)


def _msgs(*pairs):
    return tuple(ChatMessage(Role(role), content) for role, content in pairs)


class TestHistory:
    def test_starts_with_system_message(self):
        history = History("Be brief.")

        assert len(history) == 1
        assert history.messages[0] == ChatMessage(Role.SYSTEM, "Be brief.")

    def test_append_rejects_system_message(self):
        history = History("Be brief.")

        with pytest.raises(ValueError, match="system"):
            history.append(ChatMessage(Role.SYSTEM, "again"))

    def test_extended_does_not_mutate(self):
        history = History("sys")
        user = ChatMessage(Role.USER, "hi")

        snapshot = history.extended(user)

        assert snapshot[-1] == user
        assert len(history) == 1

    def test_messages_is_a_snapshot(self):
        history = History("sys")
        snapshot = history.messages
        history.append(ChatMessage(Role.USER, "hi"))

        assert len(snapshot) == 1
        assert [m.role for m in history] == [Role.SYSTEM, Role.USER]

    def test_messages_are_immutable(self):
        msg = ChatMessage(Role.USER, "hi")

        with pytest.raises(AttributeError):
            msg.content = "changed"


class TestLlama2:
    def test_system_and_user(self):
        prompt = format_chat_llama2(_msgs(("system", "You are kind."), ("user", "Hello")))

        assert prompt == "<s>[INST] <<SYS>>\nYou are kind.\n<</SYS>>\n\nHello [/INST]"

    def test_multi_turn_continues_running_string(self):
        prompt = format_chat_llama2(
            _msgs(("system", "S"), ("user", "U1"), ("assistant", "A1"), ("user", "U2"))
        )

        assert prompt == "<s>[INST] <<SYS>>\nS\n<</SYS>>\n\nU1 [/INST] A1</s><s>[INST] U2 [/INST]"

    def test_without_system_message(self):
        assert format_chat_llama2(_msgs(("user", "Hello"))) == "<s>[INST] Hello [/INST]"


class TestLlama3:
    def test_system_and_user_opens_assistant_header(self):
        prompt = format_chat_llama3(_msgs(("system", "S"), ("user", "U")))

        assert prompt == (
            "<|begin_of_text|>"
            "<|start_header_id|>system<|end_header_id|>\n\nS<|eot_id|>"
            "<|start_header_id|>user<|end_header_id|>\n\nU<|eot_id|>"
            "<|start_header_id|>assistant<|end_header_id|>\n\n"
        )

    def test_no_open_header_after_assistant(self):
        prompt = format_chat_llama3(_msgs(("system", "S"), ("user", "U"), ("assistant", "A")))

        assert prompt.endswith("<|start_header_id|>assistant<|end_header_id|>\n\nA<|eot_id|>")


class TestChatML:
    def test_system_and_user(self):
        prompt = format_chat_chatml(_msgs(("system", "S"), ("user", "U")))

        assert prompt == "<|im_start|>system\nS<|im_end|>\n<|im_start|>user\nU<|im_end|>\n<|im_start|>assistant\n"


class TestContract:
    @pytest.mark.parametrize("render", [format_chat_llama2, format_chat_llama3, format_chat_chatml])
    def test_render_is_deterministic(self, render):
        history = History("S")
        history.append(ChatMessage(Role.USER, "U1"))
        history.append(ChatMessage(Role.ASSISTANT, "A1"))
        history.append(ChatMessage(Role.USER, "U2"))

        assert render(history.messages) == render(history.messages)

    @pytest.mark.parametrize("render", [format_chat_llama2, format_chat_llama3, format_chat_chatml])
    def test_empty_history_raises(self, render):
        with pytest.raises(TemplateError, match="empty"):
            render(())

    @pytest.mark.parametrize("render", [format_chat_llama2, format_chat_llama3, format_chat_chatml])
    def test_late_system_message_raises(self, render):
        with pytest.raises(TemplateError, match="index 1"):
            render(_msgs(("user", "U"), ("system", "S")))
