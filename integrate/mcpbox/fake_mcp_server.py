"""
A minimal MCP server for integration tests. It speaks newline delimited JSON-RPC on its standard streams.

    python fake_mcp_server.py [--refuse-handshake] [--silent-ping] [--exit-on-start CODE]

Besides initialize and ping it answers:
- echo: returns its params
- crash: exits at once with the code given in params, without replying
- pid: returns the process id
Any other request is answered with method not found.
"""
import argparse
import json
import os
import sys


def reply(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def serve(options):
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        if "id" not in message:
            sys.stderr.write("notification %s\n" % message.get("method"))
            sys.stderr.flush()
            continue
        method = message.get("method")
        params = message.get("params") or {}
        response = {"jsonrpc": "2.0", "id": message["id"]}
        if method == "initialize":
            if options.refuse_handshake:
                response["error"] = {"code": -32602, "message": "unsupported protocol version"}
            else:
                response["result"] = {"protocolVersion": params.get("protocolVersion"), "capabilities": {},
                                      "serverInfo": {"name": "fake", "version": "1.0"}}
        elif method == "ping":
            if options.silent_ping:
                continue
            response["result"] = {}
        elif method == "echo":
            response["result"] = params
        elif method == "pid":
            response["result"] = {"pid": os.getpid()}
        elif method == "crash":
            sys.exit(params.get("code", 1))
        else:
            response["error"] = {"code": -32601, "message": "Method not found: %s" % method}
        reply(response)


def main():
    parser = argparse.ArgumentParser(description="fake MCP server")
    parser.add_argument('--refuse-handshake', action='store_true')
    parser.add_argument('--silent-ping', action='store_true')
    parser.add_argument('--exit-on-start', type=int, default=None)
    options = parser.parse_args()
    if options.exit_on_start is not None:
        sys.stderr.write("exiting on start\n")
        sys.exit(options.exit_on_start)
    serve(options)


if __name__ == '__main__':
    main()
