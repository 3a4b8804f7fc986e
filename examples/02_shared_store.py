"""
Example 02: Two Clients, One Store
==================================

Demonstrates how edits stay exclusive when two clients (say a phone and a
tablet of the same user) share one conversation store:
- Both clients borrow one connection from a StorePool
- A slow edit on the first client holds the session lease
- The second client's edit is refused with ConcurrencyError instead of
  interleaving with the first
- Soft-deleting the session, then purging it after the retention window

Run without an API key:
    REDRAFT_MOCK_LLM=1 uv run python examples/02_shared_store.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class SlowService:
    """Completion service that takes a moment, so the two edits overlap."""

    async def complete(self, request):
        from redraft import CompletionResponse

        await asyncio.sleep(0.5)
        last = request.history[-1].content
        return CompletionResponse(content=f"(slow reply to: {last[:60]})", model="slow")


async def main() -> None:
    from redraft import ChatClient, StorePool

    print("=== Redraft Shared Store Example ===\n")

    pool = StorePool()
    db_path = "/tmp/redraft_example_02.db"
    try:
        async with ChatClient.open(
            owner_id="demo_user", db_path=db_path, pool=pool, completion_service=SlowService()
        ) as phone, ChatClient.open(
            owner_id="demo_user", db_path=db_path, pool=pool, completion_service=SlowService()
        ) as tablet:
            turn = await phone.send("How do I push back on an unrealistic deadline?")
            session_id = turn.session_id
            print(f"Session {session_id}: {len(await phone.load_session(session_id))} messages")

            phone_edit = asyncio.create_task(
                phone.edit(session_id, turn.user_message.id, "How do I negotiate a deadline?")
            )
            await asyncio.sleep(0.1)
            tablet_result = await tablet.edit(
                session_id, turn.user_message.id, "How do I say no to a deadline?"
            )
            print(f"Tablet edit: ok={tablet_result.ok} ({type(tablet_result.error).__name__})")

            phone_result = await phone_edit
            print(f"Phone edit:  ok={phone_result.ok}, reply={phone_result.reply.content!r}")

            await tablet.delete_session(session_id)
            print(f"\nDeleted. Live sessions: {len(await tablet.list_sessions())}")

            purged = await tablet.store.purge_deleted_sessions(retention_days=0, dry_run=True)
            print(f"Purgeable right now with a zero-day window: {purged}")
    finally:
        await pool.close_all()


if __name__ == "__main__":
    asyncio.run(main())
