#!/usr/bin/env python3
"""
MCP HTTP Bridge - Bridges stdio MCP protocol to the HTTP MCP gateway.

Reads one JSON-RPC message per line from stdin, POSTs it to the gateway
with the bearer token, and writes the reply to stdout. The session id
returned by ``initialize`` is sent on every later request.
"""
import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

import requests

import config

logger = logging.getLogger(__name__)

SESSION_HEADER = 'Mcp-Session-Id'


def _error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


class MCPHttpBridge:
    def __init__(self, server_url: str, token: Optional[str] = None, timeout: float = 60.0,
                 session: Optional[requests.Session] = None):
        self.server_url = server_url.rstrip('/') + '/'
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session_id: Optional[str] = None

    def headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f"Bearer {self.token}"
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Forward one message; return the reply, or None for notifications."""
        request_id = message.get("id")
        try:
            response = self.session.post(self.server_url, json=message, headers=self.headers(),
                                         timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Gateway request failed: {e}")
            return _error(request_id, -32603, f"Gateway unreachable: {e}")

        if message.get("method") == "initialize" and response.headers.get(SESSION_HEADER):
            self.session_id = response.headers[SESSION_HEADER]

        if response.status_code == 202 or not response.content:
            return None if "id" not in message else _error(request_id, -32603, "Empty response from gateway")
        try:
            return response.json()
        except ValueError:
            return _error(request_id, -32603, f"HTTP {response.status_code}: {response.text}")

    def close(self):
        """Terminate the gateway session, if any."""
        if not self.session_id:
            return
        try:
            self.session.delete(self.server_url, headers=self.headers(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Could not terminate session {self.session_id}: {e}")
        self.session_id = None

    def run(self, stdin=sys.stdin, stdout=sys.stdout):
        """Main loop - read from stdin, write to stdout"""
        try:
            for line in stdin:
                line = line.strip()
                if not line:
                    continue

                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    reply = _error(None, -32700, "Parse error")
                else:
                    if isinstance(message, dict):
                        reply = self.handle_message(message)
                    else:
                        reply = _error(None, -32600, "Invalid Request")

                if reply is not None:
                    stdout.write(json.dumps(reply) + "\n")
                    stdout.flush()
        finally:
            self.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="stdio bridge to the MCP gateway")
    parser.add_argument('--url', default=os.getenv('MCP_GATEWAY_URL', config.SERVER_URL))
    parser.add_argument('--token', default=os.getenv('MCP_GATEWAY_TOKEN'))
    args = parser.parse_args(argv)

    # stdout carries the protocol, so logs go to stderr.
    logging.basicConfig(level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO), stream=sys.stderr)
    MCPHttpBridge(args.url, args.token).run()


if __name__ == "__main__":
    main()
