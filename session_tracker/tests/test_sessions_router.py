import types
import unittest

from fastapi import HTTPException

from session_tracker.models import Session, SessionMessage
from session_tracker.routers import sessions as sessions_router


class _FakeRepo:
    def __init__(self) -> None:
        self.count_filters = None

    async def count_sessions(self, project_name=None, favorite=None, archived=None):
        self.count_filters = {"project_name": project_name, "favorite": favorite, "archived": archived}
        return 1


class _FakeSyncEngine:
    def __init__(self) -> None:
        self.session_repo = _FakeRepo()
        self.session = Session(id="S-main", projectName="proj", filePath="/tmp/proj/S-main.jsonl", tokenCount=5)
        self.list_filters = None
        self.watch_calls: list[str] = []
        self.watcher = types.SimpleNamespace(is_watching=lambda path: path == self.session.filePath)

    async def get_all_sessions(self, project_name=None, favorite=None, archived=None, limit=None, offset=0):
        self.list_filters = {
            "project_name": project_name,
            "favorite": favorite,
            "archived": archived,
            "limit": limit,
            "offset": offset,
        }
        return [self.session]

    async def get_session(self, session_id):
        return self.session if session_id == self.session.id else None

    async def get_live_sessions(self):
        return [self.session]

    async def get_session_messages(self, session_id):
        return [SessionMessage(role="user", content="hello")]

    async def get_session_raw_entries(self, session_id, after_index=None):
        entries = [{"n": 0}, {"n": 1}]
        return entries[after_index or 0:]

    async def get_tool_usage(self, session_id):
        return {"counts": {"git": 2}, "detailed": []}

    async def is_session_live(self, session_id):
        return True

    async def refresh_session_tokens(self, session_id):
        return self.session.model_copy(update={"tokenCount": 42})

    async def watch_session(self, session_id):
        self.watch_calls.append(session_id)
        return self.session.filePath

    async def set_favorite(self, session_id, favorite):
        self.session = self.session.model_copy(update={"favorite": favorite})
        return self.session

    async def set_archived(self, session_id, archived):
        self.session = self.session.model_copy(update={"archived": archived})
        return self.session


class SessionsRouterTests(unittest.IsolatedAsyncioTestCase):
    def _request(self, engine):
        return types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(sync_engine=engine)
            )
        )

    async def test_list_sessions_passes_filters(self) -> None:
        engine = _FakeSyncEngine()
        payload = await sessions_router.list_sessions(
            self._request(engine), offset=10, limit=5, project="proj", favorite=True, archived=None
        )

        self.assertEqual(payload.total, 1)
        self.assertEqual(payload.items[0].id, "S-main")
        self.assertEqual(engine.list_filters["project_name"], "proj")
        self.assertEqual(engine.list_filters["offset"], 10)
        self.assertTrue(engine.session_repo.count_filters["favorite"])

    async def test_unknown_session_is_404(self) -> None:
        engine = _FakeSyncEngine()
        for handler in (
            sessions_router.get_session,
            sessions_router.get_session_messages,
            sessions_router.get_session_tools,
            sessions_router.refresh_session,
            sessions_router.watch_session,
        ):
            with self.assertRaises(HTTPException) as ctx:
                await handler(self._request(engine), "missing")
            self.assertEqual(ctx.exception.status_code, 404)

    async def test_detail_endpoints(self) -> None:
        engine = _FakeSyncEngine()
        request = self._request(engine)

        self.assertEqual((await sessions_router.get_session(request, "S-main")).tokenCount, 5)
        self.assertEqual((await sessions_router.get_session_messages(request, "S-main"))[0].content, "hello")
        self.assertEqual(await sessions_router.get_session_raw_entries(request, "S-main", after_index=1), [{"n": 1}])
        self.assertEqual((await sessions_router.get_session_tools(request, "S-main"))["counts"], {"git": 2})
        self.assertEqual(len(await sessions_router.list_live_sessions(request)), 1)

    async def test_live_state_and_watch(self) -> None:
        engine = _FakeSyncEngine()
        request = self._request(engine)

        live = await sessions_router.get_session_live_state(request, "S-main")
        self.assertEqual(live, {"sessionId": "S-main", "isLive": True, "watching": True})

        payload = await sessions_router.watch_session(request, "S-main")
        self.assertEqual(payload["path"], "/tmp/proj/S-main.jsonl")
        self.assertEqual(engine.watch_calls, ["S-main"])

    async def test_refresh_returns_reparsed_session(self) -> None:
        session = await sessions_router.refresh_session(self._request(_FakeSyncEngine()), "S-main")
        self.assertEqual(session.tokenCount, 42)

    async def test_flag_update(self) -> None:
        engine = _FakeSyncEngine()
        session = await sessions_router.update_session_flags(
            self._request(engine), "S-main", sessions_router.SessionFlagsUpdate(favorite=True)
        )
        self.assertTrue(session.favorite)
        self.assertFalse(session.archived)


if __name__ == "__main__":
    unittest.main()
