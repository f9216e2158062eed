"""
Per-chain USDT client cache.

Building a client opens an RPC connection and parses the ABI, so each chain's
client is built once and reused. ``invalidate`` drops cached clients after a
configuration change (see ``custody.apps.tokens.signals``).
"""

import logging
import threading
from typing import Callable, Dict, Optional

from .services.usdt_token import USDTTokenService

logger = logging.getLogger(__name__)


class ChainClientCache:
    def __init__(self, factory: Callable[[int], USDTTokenService] = USDTTokenService):
        self._factory = factory
        self._clients: Dict[int, USDTTokenService] = {}
        self._lock = threading.Lock()

    def get_client(self, chain_id: int) -> USDTTokenService:
        with self._lock:
            client = self._clients.get(chain_id)
            if client is None:
                client = self._factory(chain_id)
                self._clients[chain_id] = client
                logger.info(f"Built USDT client for chain {chain_id}")
            return client

    def invalidate(self, chain_id: Optional[int] = None) -> None:
        with self._lock:
            if chain_id is None:
                self._clients.clear()
            else:
                self._clients.pop(chain_id, None)
        logger.info(f"Invalidated USDT client cache ({'all chains' if chain_id is None else chain_id})")


clients = ChainClientCache()


def get_client(chain_id: int) -> USDTTokenService:
    return clients.get_client(chain_id)


def invalidate(chain_id: Optional[int] = None) -> None:
    clients.invalidate(chain_id)
