#!/usr/bin/env python3
"""
Fake tool server speaking newline-delimited JSON over stdio.

Tools:
    echo     - replies immediately with the arguments and the request id
    reverse  - held until a second reverse call arrives, then both are
               answered in reverse order
    hang     - never answered
    fail     - answered with an error object
    bad_id   - a reply with a list as its id, then the real answer
    exit     - the server exits with code 3 without answering

Flags:
    --ignore-term  ignore SIGTERM so the client has to kill the process
    --no-tools     discovery returns an empty tool list
"""

import json
import signal
import sys

TOOLS = [
    {"name": "echo", "description": "Echo the arguments", "inputSchema": {"type": "object"}},
    {"name": "reverse", "description": "Answered in reverse order", "inputSchema": {"type": "object"}},
    {"name": "hang", "description": "Never answers", "inputSchema": {"type": "object"}},
    {"name": "fail", "description": "Always fails", "inputSchema": {"type": "object"}},
    {"name": "bad_id", "description": "Malformed id before the answer", "inputSchema": {"type": "object"}},
    {"name": "exit", "description": "Exit the server", "inputSchema": {"type": "object"}},
]


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def call_result(request):
    params = request.get("params", {})
    return {
        "id": request["id"],
        "result": {"requestId": request["id"], "tool": params.get("name"), "arguments": params.get("arguments", {})},
    }


def main():
    if "--ignore-term" in sys.argv:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    tools = [] if "--no-tools" in sys.argv else TOOLS

    held = []
    sys.stderr.write("fake tool server ready\n")
    sys.stderr.flush()

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        request = json.loads(line)
        method = request.get("method")

        if method == "tools/list":
            send({"id": request["id"], "result": {"tools": tools}})
            continue

        if method != "tools/call":
            send({"id": request["id"], "error": {"code": -32601, "message": f"Unknown method {method}"}})
            continue

        name = request.get("params", {}).get("name")
        if name == "echo":
            send(call_result(request))
        elif name == "reverse":
            held.append(request)
            if len(held) == 2:
                for pending in reversed(held):
                    send(call_result(pending))
                held = []
        elif name == "hang":
            pass
        elif name == "fail":
            send({"id": request["id"], "error": {"code": 1, "message": "tool exploded"}})
        elif name == "bad_id":
            send({"id": [request["id"]], "result": {}})
            send(call_result(request))
        elif name == "exit":
            sys.exit(3)
        else:
            send({"id": request["id"], "error": {"code": -32602, "message": f"Unknown tool {name}"}})


if __name__ == "__main__":
    main()
