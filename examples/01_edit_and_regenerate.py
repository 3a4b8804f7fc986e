"""
Example 01: Edit and Regenerate
===============================

Demonstrates the core edit flow of ChatClient:
- Sending a few coaching questions into a new session
- Editing an earlier question
- Watching the later turns get truncated and a fresh reply generated
- Following the edit through its phases on the event bus

Run without an API key:
    REDRAFT_MOCK_LLM=1 uv run python examples/01_edit_and_regenerate.py

Run with a real LLM (set your API key first):
    OPENAI_API_KEY=sk-... uv run python examples/01_edit_and_regenerate.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from redraft import ChatClient, ChatEvent

    print("=== Redraft Edit and Regenerate Example ===\n")

    async with ChatClient.open(
        owner_id="demo_user",
        db_path="/tmp/redraft_example_01.db",
    ) as client:

        def on_phase(event, payload):
            print(f"  [phase] {payload['previous']} -> {payload['phase']}")

        client.subscribe(ChatEvent.EDIT_PHASE_CHANGED, on_phase)

        questions = [
            "My manager keeps taking credit for my work. How do I raise it?",
            "What if they get defensive?",
            "How do I follow up afterwards?",
        ]

        first = await client.send(questions[0])
        session_id = first.session_id
        print(f"Session created: {session_id}")
        for question in questions[1:]:
            await client.send(question, session_id=session_id)

        print(f"\nBefore the edit ({len(client.messages)} messages):")
        for m in client.messages:
            print(f"  {m.seq:>2} {m.role:<9} {m.content[:70]}")

        print("\nEditing the first question...")
        result = await client.edit(
            session_id,
            first.user_message.id,
            "A peer keeps presenting my analysis as theirs. How do I raise it?",
        )

        if result.ok:
            print(f"\nEdit complete: removed {result.removed_count} later messages.")
        else:
            print(f"\nEdit failed ({type(result.error).__name__}): {result.error}")
            if result.retryable:
                print("  The edit is saved; retrying the reply...")
                result = await client.retry_reply(session_id)

        print(f"\nAfter the edit ({len(client.messages)} messages):")
        for m in client.messages:
            print(f"  {m.seq:>2} {m.role:<9} {m.content[:70]}")

        sessions = await client.list_sessions()
        print(f"\nSessions for demo_user: {[s.title for s in sessions]}")

    print("\nClient closed cleanly.")


if __name__ == "__main__":
    asyncio.run(main())
