"""Fake MCP stdio server for wire-level tests.

Speaks newline-delimited JSON-RPC 2.0 on stdin/stdout, like a real server,
and is spawned as a real subprocess by the tests::

    python tests/fakes/fake_mcp_server.py [--no-tools] [--noisy] [--hang-init] ...

Tools:
  - ``echo(text)``        returns the text
  - ``add(a, b)``         returns the sum as text
  - ``fail()``            returns an ``isError`` result
  - ``broken()``          answers with a JSON-RPC error
  - ``sleep(seconds)``    answers after a delay (requests are handled
                          concurrently, so other calls are not blocked)
  - ``crash()``           exits the process without answering

Flags:
  --no-tools   tools/list returns an empty list
  --noisy      writes junk lines, an unknown-id response and a notification
               before every real response, and logs to stderr
  --hang-init  never answers ``initialize``
  --bad-ids    sends responses whose id is a list or an object before
               every real response
  --bad-init   answers ``initialize`` with a list instead of an object
  --bad-list   ``tools/list`` includes entries whose name is not a string
"""

import json
import os
import sys
import threading
import time

TOOLS = [
    {
        "name": "echo",
        "description": "Echo the given text",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "add",
        "description": "Add two numbers",
        "inputSchema": {
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        },
    },
    {"name": "fail", "description": "Always reports a tool error", "inputSchema": {"type": "object"}},
    {"name": "broken", "description": "Answers with a protocol error", "inputSchema": {"type": "object"}},
    {
        "name": "sleep",
        "description": "Wait before answering",
        "inputSchema": {"type": "object", "properties": {"seconds": {"type": "number"}}},
    },
    {"name": "crash", "description": "Exit without answering", "inputSchema": {"type": "object"}},
]

_write_lock = threading.Lock()
FLAGS = set(sys.argv[1:])


def write(message):
    line = json.dumps(message) + "\n"
    with _write_lock:
        if "--noisy" in FLAGS:
            sys.stdout.write("this is not json\n")
            sys.stdout.write(json.dumps({"jsonrpc": "2.0", "id": 99999, "result": {}}) + "\n")
            sys.stdout.write(json.dumps({"jsonrpc": "2.0", "method": "notifications/message",
                                         "params": {"level": "info", "data": "hello"}}) + "\n")
            sys.stderr.write("fake server: answering\n")
            sys.stderr.flush()
        if "--bad-ids" in FLAGS and "id" in message:
            for bogus in ([message["id"]], {"id": message["id"]}):
                sys.stdout.write(json.dumps({"jsonrpc": "2.0", "id": bogus, "result": {}}) + "\n")
        sys.stdout.write(line)
        sys.stdout.flush()


def result(msg_id, payload):
    write({"jsonrpc": "2.0", "id": msg_id, "result": payload})


def text_result(msg_id, text, is_error=False):
    result(msg_id, {"content": [{"type": "text", "text": text}], "isError": is_error})


def handle_call(msg_id, params):
    name = params.get("name")
    args = params.get("arguments") or {}
    if name == "echo":
        text_result(msg_id, str(args.get("text", "")))
    elif name == "add":
        text_result(msg_id, str(args.get("a", 0) + args.get("b", 0)))
    elif name == "fail":
        text_result(msg_id, "the tool failed on purpose", is_error=True)
    elif name == "broken":
        write({"jsonrpc": "2.0", "id": msg_id,
               "error": {"code": -32000, "message": "broken on purpose"}})
    elif name == "sleep":
        time.sleep(float(args.get("seconds", 1)))
        text_result(msg_id, f"slept {args.get('seconds', 1)}")
    elif name == "crash":
        sys.stdout.flush()
        os._exit(3)
    else:
        write({"jsonrpc": "2.0", "id": msg_id,
               "error": {"code": -32602, "message": f"Unknown tool: {name}"}})


def handle(msg):
    method = msg.get("method")
    msg_id = msg.get("id")
    if msg_id is None:
        return
    if method == "initialize":
        if "--hang-init" in FLAGS:
            return
        if "--bad-init" in FLAGS:
            result(msg_id, ["not", "an", "object"])
            return
        result(msg_id, {
            "protocolVersion": msg.get("params", {}).get("protocolVersion", "2024-11-05"),
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "fake-server", "version": "1.0.0"},
        })
    elif method == "tools/list":
        tools = [] if "--no-tools" in FLAGS else list(TOOLS)
        if "--bad-list" in FLAGS:
            tools += [{"name": 42, "description": "numeric name"}, {"name": None}, "just a string"]
        result(msg_id, {"tools": tools})
    elif method == "tools/call":
        threading.Thread(target=handle_call, args=(msg_id, msg.get("params") or {}), daemon=True).start()
    else:
        write({"jsonrpc": "2.0", "id": msg_id,
               "error": {"code": -32601, "message": f"Method not found: {method}"}})


def main():
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            continue
        handle(msg)


if __name__ == "__main__":
    main()
