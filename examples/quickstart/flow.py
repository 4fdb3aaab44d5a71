"""Run an app and print its progress with relayflow."""

from __future__ import annotations

import asyncio
import logging

from relayflow import ClientConfig, RelayClient, Task


def on_update(task: Task) -> None:
    print(f"{task.id}: {task.status.name}")


async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    async with RelayClient(ClientConfig.from_env()) as client:
        task = await client.run(
            {"app": "infsh/echo", "input": {"text": "hello relay"}},
            on_update=on_update,
            on_partial_update=lambda task, fields: print(f"{task.id}: changed {', '.join(fields)}"),
        )
        print(task.output)


if __name__ == "__main__":  # pragma: no cover - example entrypoint
    asyncio.run(main())
