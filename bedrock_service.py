"""
Amazon Bedrock service module.
Adapts the engine's function-calling transcript to the Anthropic Messages API on Bedrock.

The engine speaks in OpenAI-style messages (``role``/``content``/``tool_calls``/
``tool_call_id``) and receives streamed partial deltas in the same shape, so
the service is the only place that knows the Anthropic wire format.
"""

import asyncio
import json
import logging
import queue
import threading
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError, NoCredentialsError

from config import aws_config, model_config, get_model_config, get_max_output_tokens

logger = logging.getLogger(__name__)

_EMPTY = "(no content)"
_COMPACTED_PLACEHOLDER = "(earlier conversation omitted)"


class BedrockError(Exception):
    """Custom exception for Bedrock service errors"""
    pass


def _text_block(text: Optional[str]) -> Dict[str, Any]:
    return {"type": "text", "text": text if (text or "").strip() else _EMPTY}


def _parse_tool_input(arguments: Any) -> Dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    try:
        parsed = json.loads(arguments or "{}")
    except (TypeError, json.JSONDecodeError):
        logger.warning(f"Sending malformed tool arguments as empty input: {arguments!r}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def format_messages(messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    """Convert a function-calling transcript into (system prompt, Anthropic messages).

    System messages are merged into the system prompt; tool messages become
    ``tool_result`` blocks on a user turn; consecutive same-role turns are merged.
    """
    system_parts: List[str] = []
    formatted: List[Dict[str, Any]] = []

    def _append(role: str, blocks: List[Dict[str, Any]]) -> None:
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"].extend(blocks)
        else:
            formatted.append({"role": role, "content": blocks})

    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if role == "system":
            if content:
                system_parts.append(content)
        elif role == "tool":
            _append("user", [{
                "type": "tool_result",
                "tool_use_id": msg.get("tool_call_id", ""),
                "content": content if (content or "").strip() else _EMPTY,
            }])
        elif role == "assistant":
            blocks: List[Dict[str, Any]] = []
            if (content or "").strip():
                blocks.append({"type": "text", "text": content})
            for call in msg.get("tool_calls") or []:
                function = call.get("function") or {}
                blocks.append({
                    "type": "tool_use",
                    "id": call.get("id", ""),
                    "name": function.get("name", ""),
                    "input": _parse_tool_input(function.get("arguments")),
                })
            _append("assistant", blocks or [_text_block(content)])
        else:
            _append("user", [_text_block(content)])

    # The API requires the conversation to open on a user turn
    if formatted and formatted[0]["role"] != "user":
        formatted.insert(0, {"role": "user", "content": [_text_block(_COMPACTED_PLACEHOLDER)]})

    return "\n\n".join(system_parts), formatted


def format_tools(tools: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Function-format tool definitions to Anthropic ``{name, description, input_schema}``."""
    formatted = []
    for tool in tools or []:
        function = tool.get("function", tool)
        formatted.append({
            "name": function["name"],
            "description": function.get("description", ""),
            "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
        })
    return formatted


def _tool_call_delta(position: int, call: Dict[str, Any]) -> Dict[str, Any]:
    """A delta that lands ``call`` at ``position`` when merged element-wise."""
    return {"tool_calls": [{} for _ in range(position)] + [call]}


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.

    ``complete`` returns one message dict; ``stream_complete`` yields partial
    deltas for ``agent.streaming.merge_delta``.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region
        self.max_tokens = max_tokens or model_config.max_tokens
        self.temperature = temperature if temperature is not None else model_config.temperature

        self.client = self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _model_identifier(self) -> str:
        if self.model_id.startswith(("us.", "eu.", "ap.")):
            return self.model_id
        return get_model_config(self.model_id).get("id", self.model_id)

    def _request_body(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
        system_prompt, formatted = format_messages(messages)
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": min(self.max_tokens, get_max_output_tokens(self.model_id)),
            "messages": formatted,
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = format_tools(tools)
        logger.debug(f"Request body keys: {list(body.keys())}, messages: {len(formatted)}")
        return body

    @staticmethod
    def _translate_error(e: ClientError) -> BedrockError:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        error_message = e.response.get('Error', {}).get('Message', str(e))
        logger.error(f"Bedrock API error: {error_code} - {error_message}")
        if error_code in ['ExpiredTokenException', 'InvalidSignatureException']:
            return BedrockError("AWS credentials expired. Please refresh.")
        if error_code == 'ThrottlingException':
            return BedrockError(f"Bedrock is throttling requests: {error_message}")
        return BedrockError(f"Bedrock API error: {error_message}")

    # ── non-streaming ───────────────────────────────────────

    def _invoke(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
        model_identifier = self._model_identifier()
        logger.info(f"Invoking model: {model_identifier}")
        try:
            response = self.client.invoke_model(
                modelId=model_identifier,
                body=json.dumps(self._request_body(messages, tools)),
                contentType="application/json",
                accept="application/json"
            )
        except ClientError as e:
            raise self._translate_error(e)
        return self.parse_response(json.loads(response["body"].read()))

    @staticmethod
    def parse_response(response_body: Dict[str, Any]) -> Dict[str, Any]:
        """Anthropic response body to ``{"role", "content", "tool_calls"}``."""
        content = ""
        tool_calls = []
        try:
            for block in response_body.get("content", []):
                block_type = block.get("type", "")
                if block_type == "text":
                    content += block.get("text", "")
                elif block_type == "tool_use":
                    tool_calls.append({
                        "id": block.get("id", ""),
                        "type": "function",
                        "function": {
                            "name": block.get("name", ""),
                            "arguments": json.dumps(block.get("input", {})),
                        },
                    })
        except (AttributeError, TypeError) as e:
            logger.error(f"Error parsing response: {e}")
            raise BedrockError(f"Failed to parse model response: {e}")
        return {"role": "assistant", "content": content, "tool_calls": tool_calls}

    async def complete(self, messages: List[Dict[str, Any]],
                       tools: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._invoke, messages, tools)

    # ── streaming ───────────────────────────────────────────

    def _stream_deltas(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]],
                       stop: threading.Event):
        """Sync generator of partial deltas from invoke_model_with_response_stream."""
        model_identifier = self._model_identifier()
        logger.info(f"Streaming from model: {model_identifier}")
        try:
            response = self.client.invoke_model_with_response_stream(
                modelId=model_identifier,
                body=json.dumps(self._request_body(messages, tools)),
                contentType="application/json",
                accept="application/json"
            )
        except ClientError as e:
            raise self._translate_error(e)

        tool_position = -1
        current_block_type = "text"
        try:
            for event in response["body"]:
                if stop.is_set():
                    break
                chunk = json.loads(event["chunk"]["bytes"])
                event_type = chunk.get("type", "")

                if event_type == "content_block_start":
                    block = chunk.get("content_block", {})
                    current_block_type = block.get("type", "text")
                    if current_block_type == "tool_use":
                        tool_position += 1
                        yield _tool_call_delta(tool_position, {
                            "index": tool_position,
                            "id": block.get("id", ""),
                            "type": "function",
                            "function": {"name": block.get("name", ""), "arguments": ""},
                        })

                elif event_type == "content_block_delta":
                    delta = chunk.get("delta", {})
                    delta_type = delta.get("type", "")
                    if delta_type == "text_delta":
                        text = delta.get("text", "")
                        if text:
                            yield {"content": text}
                    elif delta_type == "input_json_delta" and current_block_type == "tool_use":
                        partial = delta.get("partial_json", "")
                        if partial:
                            yield _tool_call_delta(tool_position, {"function": {"arguments": partial}})

                elif event_type == "message_delta":
                    stop_reason = chunk.get("delta", {}).get("stop_reason")
                    logger.debug(f"Stream finished: stop_reason={stop_reason}, usage={chunk.get('usage', {})}")
        except ClientError as e:
            raise self._translate_error(e)

    async def stream_complete(self, messages: List[Dict[str, Any]],
                              tools: Optional[List[Dict[str, Any]]] = None) -> AsyncIterator[Dict[str, Any]]:
        """Yield partial deltas. Closing the generator stops the producer thread."""
        chunk_queue: queue.Queue = queue.Queue()
        stop = threading.Event()

        def _stream_producer():
            """Run the sync generator in a background thread, forwarding deltas to the queue."""
            try:
                for delta in self._stream_deltas(messages, tools, stop):
                    chunk_queue.put(delta)
                chunk_queue.put(None)  # sentinel: stream complete
            except Exception as exc:
                chunk_queue.put(exc)

        producer_thread = threading.Thread(target=_stream_producer, daemon=True)
        producer_thread.start()

        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await loop.run_in_executor(None, chunk_queue.get)
                if chunk is None:
                    break
                if isinstance(chunk, Exception):
                    raise chunk
                yield chunk
        finally:
            stop.set()

    def test_connection(self) -> tuple:
        """Test the Bedrock connection"""
        try:
            self._invoke([{"role": "user", "content": "Hi"}], None)
            return True, "Connection successful"
        except Exception as e:
            return False, str(e)
