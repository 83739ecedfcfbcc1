#!/usr/bin/env python3
"""
Misbehaving participant for client lifecycle tests.

Speaks line-delimited JSON-RPC on stdin/stdout without using collab_gateway,
so each failure mode can be triggered precisely:

    --no-handshake           never answer initialize
    --reject-handshake       answer initialize with an error
    --ignore-sigterm         ignore SIGTERM (forces SIGKILL escalation)
    --linger SECONDS         keep running this long after stdin EOF
    --crash-on METHOD        exit with code 3 when METHOD is called
    --delay METHOD=SECONDS   answer METHOD after a delay (repeatable)
    --noise                  write a non-JSON line before every response

Methods: echo (returns params), fail (error -32000 with data), anything else
returns {"method": ..., "params": ...}.
"""

import argparse
import json
import os
import signal
import sys
import threading
import time

write_lock = threading.Lock()


def send(message, noise=False):
    with write_lock:
        if noise:
            sys.stdout.write("this line is not json\n")
        sys.stdout.write(json.dumps(message) + "\n")
        sys.stdout.flush()


def respond(request_id, method, params, delay, noise):
    if delay:
        time.sleep(delay)
    if method == "fail":
        send({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": -32000, "message": "requested failure", "data": {"method": method}},
        }, noise)
    elif method == "echo":
        send({"jsonrpc": "2.0", "id": request_id, "result": params}, noise)
    else:
        send({"jsonrpc": "2.0", "id": request_id, "result": {"method": method, "params": params}}, noise)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--no-handshake", action="store_true")
    parser.add_argument("--reject-handshake", action="store_true")
    parser.add_argument("--ignore-sigterm", action="store_true")
    parser.add_argument("--linger", type=float, default=0.0)
    parser.add_argument("--crash-on")
    parser.add_argument("--delay", action="append", default=[])
    parser.add_argument("--noise", action="store_true")
    args = parser.parse_args()

    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    delays = {}
    for item in args.delay:
        method, _, seconds = item.partition("=")
        delays[method] = float(seconds)

    sys.stderr.write("stub participant started\n")
    sys.stderr.flush()

    while True:
        line = sys.stdin.readline()
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        if "id" not in message:
            continue

        request_id = message["id"]
        method = message.get("method")

        if method == "initialize":
            if args.no_handshake:
                continue
            if args.reject_handshake:
                send({"jsonrpc": "2.0", "id": request_id,
                      "error": {"code": -32602, "message": "unsupported protocol version"}})
                continue
            send({"jsonrpc": "2.0", "id": request_id, "result": {
                "protocolVersion": message.get("params", {}).get("protocolVersion"),
                "serverInfo": {"name": "stub", "version": "0.0.1"},
                "capabilities": {},
            }}, args.noise)
            continue

        if method == args.crash_on:
            sys.stderr.write(f"crashing on {method}\n")
            sys.stderr.flush()
            os._exit(3)

        threading.Thread(
            target=respond,
            args=(request_id, method, message.get("params"), delays.get(method, 0.0), args.noise),
            daemon=True,
        ).start()

    if args.linger:
        time.sleep(args.linger)


if __name__ == "__main__":
    main()
