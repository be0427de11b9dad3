# check_ollama.py
# Smoke test against a local Ollama: lists models, then streams one reply through the NDJSON reader.
import asyncio
import json
import os
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parent / "chat-stream"))

from chatstream.streaming.abort import AbortHandle  # noqa: E402
from chatstream.streaming.reader import ByteStream, consume_stream  # noqa: E402

HOST = os.getenv("OLLAMA_URL", "http://localhost:11434").rstrip("/")
MODEL = os.getenv("OLLAMA_MODEL", "llama3")


def pretty(obj): return json.dumps(obj, ensure_ascii=False, indent=2)


async def list_models(client: httpx.AsyncClient):
    r = await client.get(f"{HOST}/api/tags", timeout=10)
    r.raise_for_status()
    data = r.json()
    print("== /api/tags ==")
    print(pretty(data))
    names = [m.get("name") for m in (data.get("models") or [])]
    if not any(n and n.split(":")[0] == MODEL.split(":")[0] for n in names):
        print(f"\n!! model '{MODEL}' not pulled. Try: ollama pull {MODEL}")
    return data


async def chat_stream(client: httpx.AsyncClient, system: str, user: str):
    payload = {
        "model": MODEL,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        "options": {"temperature": 0.3},
    }
    print("\n== stream chat ==")
    request = client.build_request("POST", f"{HOST}/api/chat", json=payload)
    response = await client.send(request, stream=True)
    source = ByteStream.from_response(response)
    try:
        response.raise_for_status()

        def on_delta(text: str) -> None:
            sys.stdout.write(text)
            sys.stdout.flush()

        text = await consume_stream(source, on_delta, AbortHandle(), framing="ndjson")
    finally:
        await source.aclose()
    print("\n-- end of stream --")
    print("collected chars:", len(text))


async def main():
    async with httpx.AsyncClient(timeout=None) as client:
        await list_models(client)
        await chat_stream(client, "Answer briefly.", "Give three facts about black tea.")


if __name__ == "__main__":
    asyncio.run(main())
