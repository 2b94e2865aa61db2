from __future__ import annotations

from dataclasses import dataclass

from pgsub.pubsub import PubSub


@dataclass(frozen=True)
class ApiDeps:
    pubsub: PubSub
