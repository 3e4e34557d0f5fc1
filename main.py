"""Retrieval Engine - ask a question, get a cited answer.

Simple CLI for running single queries.
"""

import argparse
import asyncio
import uuid

from retrieval_engine.api.deps import get_engine


async def run_query(query: str, conversation_id: str, project_id: str | None = None):
    """Run one query and print its status events."""
    print(f"Query: {query}")
    print("-" * 50)

    engine = get_engine()

    async for event in engine.run_query(query, conversation_id, project_id=project_id):
        event_type = event.event.value
        data = event.data

        if event_type == "planning":
            print(f"[*] {data.get('message')}")
            if data.get("reasoning"):
                print(f"    Reasoning: {data['reasoning']}")

        elif event_type == "gathering":
            if "source" in data:
                mark = "+" if data.get("success") else "!"
                detail = f" ({data['error']})" if data.get("error") else ""
                print(f"  [{mark}] {data['source']}: {data.get('elapsed_ms')}ms{detail}")
            else:
                print(f"\n[~] {data.get('message')}")

        elif event_type == "synthesizing":
            print(f"\n[+] {data.get('message')}")

        elif event_type == "complete":
            print(f"\n[*] Done in {data.get('runtime_ms')}ms")
            if data.get("disambiguation"):
                suggestions = data["disambiguation"].get("suggestions") or []
                print(f"   Could not resolve asset; searched {data['disambiguation'].get('searched_terms')}")
                for item in suggestions:
                    print(f"   - {item.get('symbol')}: {item.get('name')}")
            print(f"\n{'='*50}")
            print(data.get("content", ""))
            citations = data.get("citations", [])
            if citations:
                print(f"\n{'='*50}")
                for citation in citations:
                    print(f"[{citation['number']}] {citation['title']} - {citation['url']}")

        elif event_type == "error":
            print(f"\n[!] Error ({data.get('code')}): {data.get('message', 'Unknown error')}")


def main():
    parser = argparse.ArgumentParser(description="Retrieval Engine query tool")
    parser.add_argument("--query", "-q", required=True, help="Question to answer")
    parser.add_argument("--conversation", "-c", help="Conversation id (default: a fresh one)")
    parser.add_argument("--project", "-p", help="Project id for shared memory")

    args = parser.parse_args()

    asyncio.run(run_query(args.query, args.conversation or str(uuid.uuid4()), args.project))


if __name__ == "__main__":
    main()
