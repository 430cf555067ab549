"""
In-memory stand-in for the Deriv WebSocket API.

`FakeDerivServer.connect` is passed to `DerivClient(connector=...)` in place
of `websockets.connect`; every socket it hands out answers requests the
way the real API does for the commands the client uses.
"""

import asyncio
import itertools
import json
import time

import pytest

from deriv_gateway.client import DerivClient
from deriv_gateway.options import ClientOptions, ConnectionOptions, TickOptions

_CLOSE = object()


class FakeSocket:
    def __init__(self, server):
        self.server = server
        self.inbox = asyncio.Queue()
        self.sent = []
        self.closed = False
        self.authorized = None

    async def send(self, frame):
        if self.closed:
            raise ConnectionResetError("socket closed")
        request = json.loads(frame)
        self.sent.append(request)
        await self.server.handle(self, request)

    def push(self, payload):
        if not self.closed:
            self.inbox.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True
        self.inbox.put_nowait(_CLOSE)

    def drop(self):
        """Close from the server side."""
        self.closed = True
        self.inbox.put_nowait(_CLOSE)


class FakeDerivServer:
    def __init__(self):
        self.accounts = {}
        self.sockets = []
        self.urls = []
        self.requests = []
        self.handlers = {}
        self.hold = set()
        self.fail_connects = 0
        self.pip_size = 2
        self._sub_ids = itertools.count(1)
        self.subscriptions = {}

    # Configuration

    def add_account(self, token, loginid, balance=100.0, currency="USD", is_virtual=False,
                    account_list=None, scopes=("read", "trade")):
        self.accounts[token] = {
            "loginid": loginid,
            "balance": balance,
            "currency": currency,
            "is_virtual": 1 if is_virtual else 0,
            "email": f"{loginid.lower()}@example.com",
            "scopes": list(scopes),
            "account_list": account_list or [
                {"loginid": loginid, "currency": currency, "is_virtual": 1 if is_virtual else 0}
            ],
        }

    @property
    def socket(self):
        return self.sockets[-1] if self.sockets else None

    async def connect(self, url, **kwargs):
        self.urls.append(url)
        if self.fail_connects:
            self.fail_connects -= 1
            raise ConnectionRefusedError("connection refused")
        sock = FakeSocket(self)
        self.sockets.append(sock)
        return sock

    def commands(self, name):
        return [r for r in self.requests if name in r]

    # Streams

    def push_tick(self, symbol, quote, epoch=None, pip_size=None):
        epoch = int(time.time()) if epoch is None else epoch
        for sub_id, (sock, kind, key) in list(self.subscriptions.items()):
            if kind == "ticks" and key == symbol and sock is self.socket:
                sock.push({
                    "msg_type": "tick",
                    "echo_req": {"ticks": symbol, "subscribe": 1},
                    "tick": {
                        "symbol": symbol, "quote": quote, "epoch": epoch,
                        "pip_size": self.pip_size if pip_size is None else pip_size,
                        "id": sub_id,
                    },
                    "subscription": {"id": sub_id},
                })

    def push_balance(self, balance):
        sock = self.socket
        for sub_id, (owner, kind, _) in list(self.subscriptions.items()):
            if kind == "balance" and owner is sock:
                account = self._account_for(sock)
                sock.push({
                    "msg_type": "balance",
                    "balance": {"balance": balance, "currency": account["currency"],
                                "loginid": sock.authorized, "id": sub_id},
                    "subscription": {"id": sub_id},
                })

    def active_subscriptions(self, kind=None):
        return [key for sub_id, (sock, k, key) in self.subscriptions.items()
                if sock is self.socket and not sock.closed and (kind is None or k == kind)]

    def _subscribe(self, sock, kind, key=None):
        sub_id = f"sub-{next(self._sub_ids)}"
        self.subscriptions[sub_id] = (sock, kind, key)
        return {"id": sub_id}

    def _account_for(self, sock):
        for account in self.accounts.values():
            if account["loginid"] == sock.authorized:
                return account
        for account in self.accounts.values():
            for entry in account["account_list"]:
                if entry["loginid"] == sock.authorized:
                    return {**account, **entry}
        return {"currency": "USD", "balance": 0}

    # Request handling

    async def handle(self, sock, request):
        self.requests.append(request)
        command = next(k for k in request if k not in ("req_id", "subscribe", "passthrough"))
        if command in self.hold:
            return
        handler = self.handlers.get(command) or getattr(self, f"_on_{command}", None)
        if handler is None:
            response = self._error(command, "UnrecognisedRequest", "Unrecognised request")
        else:
            response = handler(sock, request)
            if response is None:
                return
        response.setdefault("msg_type", command)
        response["echo_req"] = {k: v for k, v in request.items() if k != "req_id"}
        if "req_id" in request:
            response["req_id"] = request["req_id"]
        sock.push(response)

    @staticmethod
    def _error(msg_type, code, message):
        return {"msg_type": msg_type, "error": {"code": code, "message": message}}

    def _require_auth(self, sock, msg_type):
        if sock.authorized is None:
            return self._error(msg_type, "AuthorizationRequired", "Please log in.")
        return None

    def _on_authorize(self, sock, request):
        account = self.accounts.get(request["authorize"])
        if account is None:
            return self._error("authorize", "InvalidToken", "The token is invalid.")
        sock.authorized = account["loginid"]
        return {"authorize": dict(account)}

    def _on_set_account(self, sock, request):
        sock.authorized = request["set_account"]
        return {"set_account": 1}

    def _on_logout(self, sock, request):
        sock.authorized = None
        return {"logout": 1}

    def _on_ping(self, sock, request):
        return {"ping": "pong"}

    def _on_balance(self, sock, request):
        error = self._require_auth(sock, "balance")
        if error:
            return error
        account = self._account_for(sock)
        response = {"balance": {"balance": account["balance"], "currency": account["currency"],
                                "loginid": sock.authorized}}
        if request.get("subscribe"):
            response["subscription"] = self._subscribe(sock, "balance")
        return response

    def _on_transaction(self, sock, request):
        error = self._require_auth(sock, "transaction")
        if error:
            return error
        return {"transaction": {}, "subscription": self._subscribe(sock, "transaction")}

    def _on_ticks(self, sock, request):
        symbol = request["ticks"]
        if symbol.startswith("INVALID"):
            return self._error("tick", "InvalidSymbol", f"Symbol {symbol} is invalid.")
        response = {"msg_type": "tick"}
        if request.get("subscribe"):
            subscription = self._subscribe(sock, "ticks", symbol)
            response["subscription"] = subscription
            response["tick"] = {"symbol": symbol, "quote": 1000.01, "epoch": 1, "pip_size": self.pip_size,
                                "id": subscription["id"]}
        return response

    def _on_ticks_history(self, sock, request):
        symbol = request["ticks_history"]
        count = request.get("count", 10)
        prices = [round(1000 + i * 0.11, 2) for i in range(count)]
        times = [100 + i for i in range(count)]
        response = {"msg_type": "history", "history": {"prices": prices, "times": times},
                    "pip_size": self.pip_size}
        if request.get("subscribe"):
            response["subscription"] = self._subscribe(sock, "ticks", symbol)
        return response

    def _on_forget(self, sock, request):
        removed = self.subscriptions.pop(request["forget"], None) is not None
        return {"forget": 1 if removed else 0}

    def _on_forget_all(self, sock, request):
        kinds = request["forget_all"]
        kinds = [kinds] if isinstance(kinds, str) else kinds
        removed = [sub_id for sub_id, (owner, kind, _) in self.subscriptions.items()
                   if owner is sock and kind in kinds]
        for sub_id in removed:
            del self.subscriptions[sub_id]
        return {"forget_all": removed}

    def _on_active_symbols(self, sock, request):
        return {"active_symbols": [
            {"symbol": "R_100", "display_name": "Volatility 100 Index", "pip": 0.01},
            {"symbol": "R_10", "display_name": "Volatility 10 Index", "pip": 0.001},
        ]}

    def _on_proposal(self, sock, request):
        response = {"proposal": {"id": "prop-1", "ask_price": request.get("amount", 1), "payout": 1.95}}
        if request.get("subscribe"):
            response["subscription"] = self._subscribe(sock, "proposal")
        return response

    def _on_buy(self, sock, request):
        error = self._require_auth(sock, "buy")
        if error:
            return error
        return {"buy": {"contract_id": 42, "buy_price": request["price"]}}


def fast_options(**connection):
    settings = dict(
        request_timeout=0.5,
        connect_timeout=0.5,
        reconnect_base_delay=0.01,
        max_reconnect_delay=0.05,
        ping_interval=0,
        forget_timeout=0.2,
        switch_settle_delay=0,
    )
    settings.update(connection)
    return ClientOptions(connection=ConnectionOptions(**settings), ticks=TickOptions())


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def server():
    return FakeDerivServer()


@pytest.fixture
def make_client(server):
    def factory(token_store=None, **connection):
        return DerivClient(options=fast_options(**connection), token_store=token_store,
                           connector=server.connect)
    return factory
