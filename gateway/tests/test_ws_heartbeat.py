import asyncio
import unittest

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from connecthub.config import GatewayConfig
from connecthub.ws_transport import create_app

_CLOSED = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)


class WsHeartbeatTests(unittest.IsolatedAsyncioTestCase):
    async def _start_client(self, **settings) -> tuple[TestClient, TestServer]:
        app = create_app(GatewayConfig(ring_timeout_s=0, **settings))
        server = TestServer(app)
        await server.start_server()
        client = TestClient(server)
        await client.start_server()
        return client, server

    async def _authenticate(self, client: TestClient, identity=1):
        ws = await client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "authenticate", "id": "auth", "body": {"identity": identity}})
        ack = await ws.receive_json()
        self.assertEqual(ack["t"], "authenticated")
        return ws

    async def _wait_for_close(self, ws, *, timeout: float) -> list:
        """Read until the server closes, returning the text payloads seen."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        payloads = []
        while not ws.closed:
            remaining = deadline - loop.time()
            if remaining <= 0:
                self.fail("Timed out waiting for the server to close the connection")
            msg = await ws.receive(timeout=remaining)
            if msg.type == WSMsgType.TEXT:
                payloads.append(msg.json())
            elif msg.type in _CLOSED:
                break
        return payloads

    async def test_idle_connection_is_pinged_then_closed(self):
        client, server = await self._start_client(ping_interval_s=1, ping_miss_limit=1)
        try:
            ws = await self._authenticate(client)

            payloads = await self._wait_for_close(ws, timeout=8)

            self.assertIn("ping", [p.get("t") for p in payloads])
            self.assertTrue(ws.closed)
            self.assertEqual(ws.close_code, 1001)
        finally:
            await client.close()
            await server.close()

    async def test_idle_close_takes_the_identity_offline(self):
        client, server = await self._start_client(ping_interval_s=1, ping_miss_limit=1)
        runtime = server.app["runtime"]
        try:
            ws = await self._authenticate(client, identity="quiet")
            self.assertTrue(runtime.presence.is_online("quiet"))

            await self._wait_for_close(ws, timeout=8)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + 2
            while runtime.presence.is_online("quiet"):
                if loop.time() > deadline:
                    self.fail("identity stayed online after heartbeat close")
                await asyncio.sleep(0.05)
        finally:
            await client.close()
            await server.close()

    async def test_client_ping_receives_pong_and_stays_open(self):
        client, server = await self._start_client(ping_interval_s=1, ping_miss_limit=1)
        try:
            ws = await self._authenticate(client)

            async def assert_pong_for_client_ping(ping_id: str, *, deadline: float):
                await ws.send_json({"v": 1, "t": "ping", "id": ping_id})
                while True:
                    remaining = deadline - asyncio.get_running_loop().time()
                    if remaining <= 0:
                        self.fail(f"Timed out waiting for pong {ping_id}")

                    msg = await ws.receive(timeout=remaining)
                    if msg.type == WSMsgType.TEXT:
                        payload = msg.json()
                        if payload.get("t") == "ping":
                            await ws.send_json({"v": 1, "t": "pong", "id": payload.get("id")})
                            continue
                        if payload.get("t") == "pong" and payload.get("id") == ping_id:
                            return
                    elif msg.type in _CLOSED:
                        self.fail("Connection closed while waiting for pong")

            loop = asyncio.get_running_loop()
            for ping_id in ("c1", "c2", "c3"):
                await assert_pong_for_client_ping(ping_id, deadline=loop.time() + 5)
                await asyncio.sleep(0.6)

            self.assertFalse(ws.closed)
        finally:
            await client.close()
            await server.close()

    async def test_outbound_overflow_closes_with_backpressure(self):
        client, server = await self._start_client(ping_interval_s=3600, outbound_queue_size=1)
        try:
            ws = await client.ws_connect("/v1/ws")
            await ws.send_json({"v": 1, "t": "authenticate", "id": "auth", "body": {"identity": 1}})
            for i in range(20):
                await ws.send_json({"v": 1, "t": "ping", "id": f"p{i}"})

            await self._wait_for_close(ws, timeout=5)

            self.assertTrue(ws.closed)
            self.assertEqual(ws.close_code, 1011)
        finally:
            await client.close()
            await server.close()


if __name__ == "__main__":
    unittest.main()
