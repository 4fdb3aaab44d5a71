"""Chat with an agent that calls back into a local tool."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

from relayflow import ChatMessage, ClientConfig, RelayClient


async def current_time(args: dict) -> dict[str, str]:
    zone = args.get("timezone", "UTC")
    return {"timezone": zone, "now": datetime.now(UTC).isoformat()}


def show(message: ChatMessage) -> None:
    if message.role == "assistant" and message.content:
        print(f"assistant: {message.content}")


async def main() -> None:
    async with RelayClient(ClientConfig.from_env()) as client:
        agent = client.agent("infsh/assistant@latest", tools={"current_time": current_time})
        await agent.send_message("What time is it in UTC?", on_message=show)
        await agent.send_message("And how long until midnight?", on_message=show)
        agent.disconnect()


if __name__ == "__main__":  # pragma: no cover - example entrypoint
    asyncio.run(main())
