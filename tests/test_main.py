"""Tests for the ollama-stream command line (main.py)."""

import io
import json
import logging
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

import config as config_module
import logger as logger_module
import main
from errors import TransportError
from ollama_client import OllamaClient
from stream_decoder import DecodePolicy


# ── Fixtures ───────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Private config file and log dir, no OLLAMA_* env, logger reset afterwards."""
    monkeypatch.setattr(config_module, "CONFIG_PATH", tmp_path / "config.json")
    monkeypatch.setattr(logger_module, "DEFAULT_LOG_DIR", tmp_path / "logs")
    for var in ("OLLAMA_URL", "OLLAMA_HOST", "OLLAMA_MODEL", "OLLAMA_KEEP_ALIVE"):
        monkeypatch.delenv(var, raising=False)
    yield
    logger_module.setup_logging()
    logging.getLogger(logger_module.ROOT_LOGGER).setLevel(logging.NOTSET)


@pytest.fixture
def http(monkeypatch):
    """Replace the HTTP layer of every client main() builds; returns the mock."""
    mock_http = MagicMock()
    built = []

    def factory(cfg, args):
        policy = DecodePolicy.SKIP if args.skip_bad_json else DecodePolicy.ABORT
        client = OllamaClient.from_config(cfg, policy=policy)
        client._client = mock_http
        built.append(client)
        return client

    monkeypatch.setattr(main, "make_client", factory)
    mock_http.built = built
    return mock_http


def run(tmp_path, *argv) -> int:
    return main.main(["--log-file", str(tmp_path / "cli.log"), *argv])


def buffered(http, body):
    resp = MagicMock()
    resp.text = body if isinstance(body, str) else json.dumps(body)
    http.request.return_value = resp


def streamed(http, objects):
    ctx = MagicMock()
    ctx.__enter__ = MagicMock(return_value=ctx)
    ctx.__exit__ = MagicMock(return_value=False)
    ctx.is_error = False
    data = b"".join(json.dumps(o).encode() + b"\n" for o in objects)
    # deliberately awkward chunking
    ctx.iter_bytes = MagicMock(return_value=iter([data[i:i + 7] for i in range(0, len(data), 7)]))
    http.stream.return_value = ctx


# ── Parser ─────────────────────────────────────────────────────────────────────

class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args([])

    def test_global_flags(self):
        args = main.build_parser().parse_args(["-m", "llama2", "--raw", "--skip-bad-json", "list"])
        assert args.model == "llama2"
        assert args.raw and args.skip_bad_json
        assert args.command == "list"

    def test_every_command_has_handler(self):
        parser = main.build_parser()
        sub = next(a for a in parser._actions if a.dest == "command")
        assert set(sub.choices) == set(main.COMMANDS)

    def test_make_client_policy(self):
        args = main.build_parser().parse_args(["--skip-bad-json", "list"])
        client = main.make_client(config_module.ClientConfig(), args)
        assert client.policy is DecodePolicy.SKIP


# ── Token printer ──────────────────────────────────────────────────────────────

class TestTokenPrinter:
    def test_collects_generate_and_chat_tokens(self, capsys):
        printer = main.TokenPrinter()
        printer({"response": "Hel"}, "")
        printer({"message": {"content": "lo"}}, "")
        assert printer.text == "Hello"
        assert printer.events == 2
        assert "Hello" in capsys.readouterr().out

    def test_progress_line(self):
        assert main.TokenPrinter._progress({"status": "pulling", "total": 200, "completed": 50}) == "pulling 25%"
        assert main.TokenPrinter._progress({"status": "success"}) == "success"

    def test_raw_mode_prints_source(self, capsys):
        main.TokenPrinter(raw=True)({"a": 1}, '{"a":1}')
        assert '{"a":1}' in capsys.readouterr().out

    def test_error_object(self, capsys):
        main.TokenPrinter()({"error": "model not found"}, "")
        assert "model not found" in capsys.readouterr().out


# ── Commands ───────────────────────────────────────────────────────────────────

class TestCommands:
    def test_generate_streams(self, tmp_path, http, capsys):
        streamed(http, [
            {"response": "The sky", "done": False},
            {"response": " is blue.", "done": False},
            {"response": "", "done": True},
        ])
        assert run(tmp_path, "-m", "llama2", "generate", "why?") == 0
        args, kwargs = http.stream.call_args
        assert args == ("POST", "http://localhost:11434/api/generate")
        assert kwargs["json"] == {"model": "llama2", "prompt": "why?"}
        assert "The sky is blue." in capsys.readouterr().out

    def test_generate_no_stream(self, tmp_path, http, capsys):
        buffered(http, {"response": "whole answer", "done": True})
        assert run(tmp_path, "-m", "llama2", "generate", "--no-stream", "q") == 0
        args, kwargs = http.request.call_args
        assert kwargs["json"] == {"model": "llama2", "prompt": "q", "stream": False}
        assert "whole answer" in capsys.readouterr().out

    def test_chat_one_shot(self, tmp_path, http, monkeypatch, capsys):
        monkeypatch.setattr("sys.stdin", io.StringIO(""))
        streamed(http, [
            {"message": {"role": "assistant", "content": "Hi there"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True},
        ])
        assert run(tmp_path, "-m", "llama2", "chat", "hello") == 0
        _, kwargs = http.stream.call_args
        assert kwargs["json"]["messages"] == [{"role": "user", "content": "hello"}]
        assert "Hi there" in capsys.readouterr().out

    def test_chat_piped_stdin(self, tmp_path, http, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("summarise this\n"))
        streamed(http, [{"message": {"content": "ok"}, "done": True}])
        assert run(tmp_path, "-m", "llama2", "chat") == 0
        _, kwargs = http.stream.call_args
        assert kwargs["json"]["messages"] == [{"role": "user", "content": "summarise this"}]

    def test_chat_repl_keeps_history(self, http, monkeypatch):
        answers = iter(["first question", "second question", "/exit"])
        monkeypatch.setattr("builtins.input", lambda _prompt: next(answers))
        payloads = []

        def fake_stream(method, url, json):
            payloads.append([dict(m) for m in json["messages"]])
            ctx = MagicMock()
            ctx.__enter__ = MagicMock(return_value=ctx)
            ctx.__exit__ = MagicMock(return_value=False)
            ctx.is_error = False
            reply = {"message": {"content": f"answer {len(payloads)}"}, "done": True}
            ctx.iter_bytes = MagicMock(return_value=iter([json_bytes(reply)]))
            return ctx

        http.stream.side_effect = fake_stream
        client = OllamaClient(model="llama2")
        client._client = http
        main.chat_repl(client, "llama2")

        assert payloads[1] == [
            {"role": "user", "content": "first question"},
            {"role": "assistant", "content": "answer 1"},
            {"role": "user", "content": "second question"},
        ]

    def test_show(self, tmp_path, http, capsys):
        buffered(http, {"modelfile": "FROM llama2"})
        assert run(tmp_path, "-m", "llama2", "show", "--verbose") == 0
        args, kwargs = http.request.call_args
        assert args == ("POST", "http://localhost:11434/api/show")
        assert kwargs["json"] == {"model": "llama2", "verbose": True}
        assert "FROM llama2" in capsys.readouterr().out

    def test_copy(self, tmp_path, http, capsys):
        buffered(http, "")
        assert run(tmp_path, "-m", "llama2", "copy", "llama2-backup") == 0
        assert http.request.call_args[1]["json"] == {"source": "llama2", "destination": "llama2-backup"}
        assert "llama2-backup" in capsys.readouterr().out

    def test_delete(self, tmp_path, http):
        buffered(http, "")
        assert run(tmp_path, "delete", "old") == 0
        args, kwargs = http.request.call_args
        assert args[0] == "DELETE"
        assert kwargs["json"] == {"model": "old"}

    def test_pull_progress(self, tmp_path, http, capsys):
        streamed(http, [
            {"status": "pulling manifest"},
            {"status": "downloading", "total": 100, "completed": 40},
            {"status": "success"},
        ])
        assert run(tmp_path, "pull", "llama3.2", "--insecure") == 0
        assert http.stream.call_args[1]["json"] == {"model": "llama3.2", "insecure": True}
        out = capsys.readouterr().out
        assert "downloading 40%" in out
        assert "success" in out

    def test_embeddings(self, tmp_path, http, capsys):
        buffered(http, {"embedding": [0.5] * 10})
        assert run(tmp_path, "-m", "nomic-embed-text", "--keep-alive", "30", "embeddings", "hello") == 0
        assert http.request.call_args[1]["json"] == {
            "model": "nomic-embed-text",
            "keep_alive": 30,
            "prompt": "hello",
        }
        assert "10" in capsys.readouterr().out

    def test_list_marks_current_model(self, tmp_path, http, capsys):
        buffered(http, {"models": [{"name": "llama2"}, {"name": "qwen"}]})
        assert run(tmp_path, "-m", "qwen", "list") == 0
        http.request.assert_called_once_with("GET", "http://localhost:11434/api/tags")
        out = capsys.readouterr().out
        assert "llama2" in out and "qwen" in out

    def test_ps_empty(self, tmp_path, http, capsys):
        buffered(http, {"models": []})
        assert run(tmp_path, "ps") == 0
        assert "No models" in capsys.readouterr().out

    def test_url_flag(self, tmp_path, http):
        buffered(http, {"models": []})
        run(tmp_path, "--url", "gpu-box:11434/", "list")
        http.request.assert_called_once_with("GET", "http://gpu-box:11434/api/tags")

    def test_transport_error_exit_code(self, tmp_path, http, capsys):
        http.request.side_effect = TransportError("Cannot reach Ollama at http://localhost:11434/api/tags: refused")
        assert run(tmp_path, "list") == 1
        assert "Cannot reach Ollama" in capsys.readouterr().out

    def test_model_remembered(self, tmp_path, http):
        buffered(http, {"models": []})
        run(tmp_path, "-m", "phi3", "list")
        assert config_module.read_config_file()["default_model"] == "phi3"
        # next run picks it up without -m
        buffered(http, {"modelfile": ""})
        run(tmp_path, "show")
        assert http.request.call_args[1]["json"]["model"] == "phi3"

    def test_env_url_used(self, tmp_path, http, monkeypatch):
        monkeypatch.setenv("OLLAMA_URL", "http://envhost:1234")
        buffered(http, {"models": []})
        run(tmp_path, "ps")
        http.request.assert_called_once_with("GET", "http://envhost:1234/api/ps")


class TestConfigErrors:
    def test_bad_keep_alive_env(self, tmp_path, http, monkeypatch, capsys):
        monkeypatch.setenv("OLLAMA_KEEP_ALIVE", "5m")
        assert run(tmp_path, "list") == 1
        out = capsys.readouterr().out
        assert "OLLAMA_KEEP_ALIVE" in out
        assert "'5m'" in out
        http.request.assert_not_called()

    def test_bad_timeout_in_config_file(self, tmp_path, http, capsys):
        config_module.save_config({"timeout": "soon"})
        assert run(tmp_path, "ps") == 1
        assert "timeout must be a number" in capsys.readouterr().out
        http.request.assert_not_called()


class TestLogFile:
    def test_default_log_file_is_date_stamped(self, tmp_path, http):
        buffered(http, {"models": []})
        assert main.main(["list"]) == 0
        assert len(list((tmp_path / "logs").glob("ollama-stream-*.log"))) == 1

    def test_explicit_log_file(self, tmp_path, http):
        buffered(http, {"models": []})
        assert run(tmp_path, "--log-level", "DEBUG", "list") == 0
        assert not (tmp_path / "logs").exists()
        for h in logging.getLogger(logger_module.ROOT_LOGGER).handlers:
            h.flush()
        assert "Command list" in (tmp_path / "cli.log").read_text()


def json_bytes(obj) -> bytes:
    return json.dumps(obj).encode() + b"\n"
