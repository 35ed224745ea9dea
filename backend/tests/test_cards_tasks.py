"""Tests for cards, tasks, assignees, comments and GitHub attachments."""
import httpx
import pytest
import pytest_asyncio

from github_client import GitHubClient

from tests.conftest import connect, get_auth_headers


def _issue_transport(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/repos/octo/app/issues/7":
            return httpx.Response(200, json={
                "number": 7, "title": "Crash on login", "state": "open",
                "html_url": "https://github.com/octo/app/issues/7",
                "user": {"login": "octocat", "avatar_url": "https://a/1"},
                "created_at": "2024-01-01T00:00:00Z", "updated_at": "2024-01-02T00:00:00Z",
            })
        return httpx.Response(404, json={"message": "Not Found"})
    return httpx.MockTransport(handler)


@pytest_asyncio.fixture
async def card(client, shared_board, owner):
    resp = await client.post(
        f"/api/v1/boards/{shared_board['id']}/cards", json={"name": "Backlog"}, headers=get_auth_headers(owner),
    )
    return resp.json()


@pytest_asyncio.fixture
async def task(client, shared_board, card, owner):
    resp = await client.post(
        f"/api/v1/boards/{shared_board['id']}/cards/{card['id']}/tasks",
        json={"title": "Write brief", "priority": "high"},
        headers=get_auth_headers(owner),
    )
    return resp.json()


def _task_url(board, card, task, suffix=""):
    return f"/api/v1/boards/{board['id']}/cards/{card['id']}/tasks/{task['id']}{suffix}"


# ============================================================
# CARDS
# ============================================================

@pytest.mark.asyncio
async def test_create_card_broadcasts_to_board(client, services, shared_board, owner, member):
    _, socket = connect(services, member, shared_board["id"])
    resp = await client.post(
        f"/api/v1/boards/{shared_board['id']}/cards", json={"name": "Doing"}, headers=get_auth_headers(owner),
    )
    assert resp.status_code == 201
    card = resp.json()
    assert card["position"] == 0
    assert card["tasksCount"] == 0
    assert socket.of_type("card_created")[0]["data"]["card"]["id"] == card["id"]


@pytest.mark.asyncio
async def test_outsider_cannot_create_card(client, shared_board, outsider):
    resp = await client.post(
        f"/api/v1/boards/{shared_board['id']}/cards", json={"name": "Sneaky"}, headers=get_auth_headers(outsider),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_update_move_and_delete_card(client, services, store, shared_board, card, owner, member):
    headers = get_auth_headers(member)
    base = f"/api/v1/boards/{shared_board['id']}/cards/{card['id']}"
    _, socket = connect(services, owner, shared_board["id"])

    updated = await client.put(base, json={"name": "Ideas"}, headers=headers)
    assert updated.json()["name"] == "Ideas"

    moved = await client.patch(f"{base}/move", json={"position": 3}, headers=headers)
    assert moved.json()["position"] == 3
    assert socket.of_type("card_moved")[0]["data"]["position"] == 3

    deleted = await client.delete(base, headers=headers)
    assert deleted.status_code == 200
    assert await store.get(f"cards/{card['id']}") is None
    assert socket.types() == ["card_updated", "card_moved", "card_deleted"]


@pytest.mark.asyncio
async def test_cards_by_user_follow_card_members(client, store, shared_board, card, owner, member):
    headers = get_auth_headers(member)
    mine = (await client.post(f"/api/v1/boards/{shared_board['id']}/cards", json={"name": "Mine"}, headers=headers)).json()
    url = f"/api/v1/boards/{shared_board['id']}/cards/user"

    resp = await client.get(f"{url}/{owner['id']}", headers=headers)
    assert [c["id"] for c in resp.json()] == [card["id"]]

    # Sharing a card with the member lists it for them even though the owner created it
    await store.update(f"cards/{card['id']}", {"members": [owner["id"], member["id"]]})
    resp = await client.get(f"{url}/{member['id']}", headers=headers)
    assert sorted(c["id"] for c in resp.json()) == sorted([card["id"], mine["id"]])


@pytest.mark.asyncio
async def test_card_from_other_board_is_404(client, board, card, owner):
    resp = await client.get(f"/api/v1/boards/{board['id']}/cards/{card['id']}", headers=get_auth_headers(owner))
    assert resp.status_code == 404


# ============================================================
# TASKS
# ============================================================

@pytest.mark.asyncio
async def test_create_task_defaults_and_counter(client, store, card, task):
    assert task["status"] == "todo"
    assert task["priority"] == "high"
    assert task["assignedTo"] == []
    assert (await store.get(f"cards/{card['id']}"))["tasksCount"] == 1


@pytest.mark.asyncio
async def test_status_change_emits_two_events(client, services, shared_board, card, task, owner, member):
    _, socket = connect(services, member, shared_board["id"])
    resp = await client.put(
        _task_url(shared_board, card, task), json={"status": "in-progress"}, headers=get_auth_headers(owner),
    )
    assert resp.json()["status"] == "in-progress"
    assert socket.types() == ["task_updated", "task_status_changed"]
    changed = socket.of_type("task_status_changed")[0]["data"]
    assert changed["oldStatus"] == "todo"
    assert changed["newStatus"] == "in-progress"


@pytest.mark.asyncio
async def test_title_change_emits_only_update(client, services, shared_board, card, task, owner):
    _, socket = connect(services, owner, shared_board["id"])
    await client.put(
        _task_url(shared_board, card, task), json={"title": "Rewrite brief", "dueDate": "2025-01-01"},
        headers=get_auth_headers(owner),
    )
    assert socket.types() == ["task_updated"]
    assert socket.messages[0]["data"]["task"]["dueDate"] == "2025-01-01"


@pytest.mark.asyncio
async def test_invalid_status_is_bad_request(client, shared_board, card, task, owner):
    resp = await client.put(
        _task_url(shared_board, card, task), json={"status": "blocked"}, headers=get_auth_headers(owner),
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_move_task_between_cards(client, store, shared_board, card, task, owner):
    headers = get_auth_headers(owner)
    target = (await client.post(
        f"/api/v1/boards/{shared_board['id']}/cards", json={"name": "Done"}, headers=headers,
    )).json()

    resp = await client.patch(
        f"/api/v1/boards/{shared_board['id']}/tasks/{task['id']}/move",
        json={"targetCardId": target["id"]},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["cardId"] == target["id"]
    assert (await store.get(f"cards/{card['id']}"))["tasksCount"] == 0
    assert (await store.get(f"cards/{target['id']}"))["tasksCount"] == 1


@pytest.mark.asyncio
async def test_move_task_to_malformed_card_id(client, store, shared_board, card, task, owner):
    resp = await client.patch(
        f"/api/v1/boards/{shared_board['id']}/tasks/{task['id']}/move",
        json={"targetCardId": "a/b"},
        headers=get_auth_headers(owner),
    )
    assert resp.status_code == 404
    assert (await store.get(f"tasks/{task['id']}"))["cardId"] == card["id"]


@pytest.mark.asyncio
async def test_delete_task(client, store, shared_board, card, task, owner):
    resp = await client.delete(_task_url(shared_board, card, task), headers=get_auth_headers(owner))
    assert resp.status_code == 200
    assert await store.get(f"tasks/{task['id']}") is None
    assert (await store.get(f"cards/{card['id']}"))["tasksCount"] == 0


# ============================================================
# ASSIGNEES
# ============================================================

@pytest.mark.asyncio
async def test_assign_notifies_assignee(client, services, shared_board, card, task, owner, member):
    _, socket = connect(services, owner, shared_board["id"])
    url = _task_url(shared_board, card, task, "/assign")

    resp = await client.post(url, json={"memberId": member["id"]}, headers=get_auth_headers(owner))
    assert resp.status_code == 200
    assert resp.json()["assignedTo"] == [member["id"]]
    assert socket.of_type("task_assigned")[0]["data"]["memberId"] == member["id"]

    [notification] = await services.notifications.list_for_user(member["id"])
    assert notification["type"] == "task_assigned"
    assert notification["message"] == 'Olivia Owner assigned you to "Write brief"'

    again = await client.post(url, json={"memberId": member["id"]}, headers=get_auth_headers(owner))
    assert again.status_code == 409

    assignees = (await client.get(url, headers=get_auth_headers(owner))).json()
    assert assignees[0]["displayName"] == "Max Member"


@pytest.mark.asyncio
async def test_self_assignment_does_not_notify(client, services, shared_board, card, task, owner):
    await client.post(
        _task_url(shared_board, card, task, "/assign"), json={"memberId": owner["id"]},
        headers=get_auth_headers(owner),
    )
    assert await services.notifications.list_for_user(owner["id"]) == []


@pytest.mark.asyncio
async def test_assign_non_member_rejected(client, shared_board, card, task, owner, outsider):
    resp = await client.post(
        _task_url(shared_board, card, task, "/assign"), json={"memberId": outsider["id"]},
        headers=get_auth_headers(owner),
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_unassign(client, services, shared_board, card, task, owner, member):
    headers = get_auth_headers(owner)
    await client.post(_task_url(shared_board, card, task, "/assign"), json={"memberId": member["id"]}, headers=headers)

    resp = await client.delete(_task_url(shared_board, card, task, f"/assign/{member['id']}"), headers=headers)
    assert resp.json()["assignedTo"] == []
    missing = await client.delete(_task_url(shared_board, card, task, f"/assign/{member['id']}"), headers=headers)
    assert missing.status_code == 404


# ============================================================
# COMMENTS
# ============================================================

@pytest.mark.asyncio
async def test_comment_notifies_other_assignees(client, services, shared_board, card, task, owner, member):
    headers = get_auth_headers(owner)
    for assignee in (owner, member):
        await client.post(
            _task_url(shared_board, card, task, "/assign"), json={"memberId": assignee["id"]}, headers=headers,
        )
    _, socket = connect(services, member, shared_board["id"])

    resp = await client.post(_task_url(shared_board, card, task, "/comments"), json={"body": "Looks good"}, headers=headers)
    assert resp.status_code == 201
    comment = resp.json()
    assert comment["authorName"] == "Olivia Owner"
    assert socket.of_type("task_comment_added")[0]["data"]["comment"]["id"] == comment["id"]

    types = [n["type"] for n in await services.notifications.list_for_user(member["id"])]
    assert types.count("task_comment") == 1
    assert await services.notifications.list_for_user(owner["id"]) == []

    listing = await client.get(_task_url(shared_board, card, task, "/comments"), headers=headers)
    assert [c["body"] for c in listing.json()] == ["Looks good"]


# ============================================================
# GITHUB ATTACHMENTS
# ============================================================

@pytest.mark.asyncio
async def test_attachment_add_duplicate_and_remove(client, services, shared_board, card, task, owner, member):
    headers = get_auth_headers(owner)
    url = _task_url(shared_board, card, task, "/github-attachments")
    body = {"type": "issue", "repository": {"owner": "octo", "name": "app"}, "githubId": "7"}
    _, socket = connect(services, member, shared_board["id"])

    resp = await client.post(url, json=body, headers=headers)
    assert resp.status_code == 201
    attachment = resp.json()
    assert attachment["repository"]["fullName"] == "octo/app"
    assert attachment["attachedBy"] == "Olivia Owner"
    assert attachment["attachedByUserId"] == owner["id"]

    duplicate = await client.post(url, json=body, headers=headers)
    assert duplicate.status_code == 409

    removed = await client.delete(f"{url}/{attachment['id']}", headers=headers)
    assert removed.status_code == 200
    assert (await client.delete(f"{url}/{attachment['id']}", headers=headers)).status_code == 404
    assert socket.types() == ["github_attachment_added", "github_attachment_removed"]


@pytest.mark.asyncio
async def test_attachment_type_is_validated(client, shared_board, card, task, owner):
    resp = await client.post(
        _task_url(shared_board, card, task, "/github-attachments"),
        json={"type": "gist", "repository": {"owner": "octo", "name": "app"}, "githubId": "1"},
        headers=get_auth_headers(owner),
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_attachment_listing_without_token_has_no_metadata(client, shared_board, card, task, owner):
    url = _task_url(shared_board, card, task, "/github-attachments")
    body = {"type": "issue", "repository": {"owner": "octo", "name": "app"}, "githubId": "7"}
    await client.post(url, json=body, headers=get_auth_headers(owner))

    [item] = (await client.get(url, headers=get_auth_headers(owner))).json()
    assert item["metadata"] is None


@pytest.mark.asyncio
async def test_attachment_listing_enriches_and_tolerates_failures(
    client, services, store, shared_board, card, task, owner,
):
    calls = []
    services.github_factory = lambda token: GitHubClient(token, base_url="https://gh.test", transport=_issue_transport(calls))
    await store.update(f"users/{owner['id']}", {"githubAccessToken": "gho_test"})
    headers = get_auth_headers(owner)
    url = _task_url(shared_board, card, task, "/github-attachments")
    await client.post(url, json={"type": "issue", "repository": {"owner": "octo", "name": "app"}, "githubId": "7"}, headers=headers)
    await client.post(url, json={"type": "issue", "repository": {"owner": "octo", "name": "app"}, "githubId": "8"}, headers=headers)

    found, missing = (await client.get(url, headers=headers)).json()

    assert found["metadata"]["title"] == "Crash on login"
    assert found["metadata"]["author"]["login"] == "octocat"
    assert missing["metadata"] == {"title": "Unable to fetch details", "error": True}
    assert calls == ["/repos/octo/app/issues/7", "/repos/octo/app/issues/8"]
