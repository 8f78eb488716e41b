import uuid
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from recipebox.core.ai_client import ai_client
from recipebox.exceptions import ImportPipelineError
from recipebox.models import Recipe, RecipeImport, RecipeIngredient, RecipeStep
from recipebox.services import recipe_import
from recipebox.services.extraction import ExtractedIngredient, ExtractedRecipe, ExtractedStep

from conftest import USER_ID

SOURCE_URL = "https://example.com/pancakes"
PAGE_HTML = "<html><head><title>Pancakes</title></head><body><h1>Pancakes</h1></body></html>"


def _extracted(**overrides):
    data = dict(
        title="**Best Pancakes**",
        cook_time_minutes=10,
        prep_time_minutes=None,
        ingredients=[
            ExtractedIngredient(raw_text="2 cups flour", normalized_name="All-Purpose Flour"),
            ExtractedIngredient(raw_text="- 1 cup milk", normalized_name="milk"),
        ],
        steps=[ExtractedStep(step_text="1. Mix"), ExtractedStep(step_text="Cook until golden.")],
        images=[],
    )
    data.update(overrides)
    return ExtractedRecipe(**data)


@contextmanager
def pipeline(fetch=None, extracted=None, download=None):
    """Patch the network and the model for the background import."""
    fetch = fetch or AsyncMock(return_value=(SOURCE_URL, PAGE_HTML))
    generate = AsyncMock(return_value=extracted if extracted is not None else _extracted())
    download = download or AsyncMock(return_value=b"")
    with patch("recipebox.services.recipe_import.fetch_page", fetch), \
         patch("recipebox.services.recipe_import.download_image", download), \
         patch.object(ai_client, "generate_structured", generate):
        yield {"fetch": fetch, "generate": generate, "download": download}


def _start_import(client, headers, url=SOURCE_URL, extra_headers=None):
    return client.post(
        "/api/recipes/import",
        json={"source_url": url},
        headers={**headers, **(extra_headers or {})},
    )


def test_import_returns_placeholder(client, user_headers):
    with pipeline(fetch=AsyncMock(side_effect=ImportPipelineError("fetch_failed", "down"))):
        res = _start_import(client, user_headers)

    assert res.status_code == 202, res.text
    body = res.json()
    assert body["recipe"]["title"] == "Importing recipe"
    assert body["recipe"]["status"] == "processing"
    assert body["recipe"]["source_url"] == SOURCE_URL
    assert body["import"]["status"] == "processing"
    assert body["import"]["attempt_count"] == 0
    assert body["import"]["recipe_id"] == body["recipe"]["id"]
    assert "user_id" not in body["import"]


def test_import_succeeds(client, user_headers, db_session):
    with pipeline() as mocks:
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    mocks["fetch"].assert_awaited_once_with(SOURCE_URL)
    assert "Pancakes" in mocks["generate"].await_args.kwargs["prompt"]

    detail = client.get(f"/api/recipes/{recipe_id}", headers=user_headers).json()
    assert detail["recipe"]["status"] == "succeeded"
    assert detail["recipe"]["title"] == "Best Pancakes"
    assert detail["recipe"]["cook_time_minutes"] == 10
    assert detail["recipe"]["prep_time_minutes"] is None
    assert [i["normalized_name"] for i in detail["ingredients"]] == ["all-purpose flour", "milk"]
    assert [i["raw_text"] for i in detail["ingredients"]] == ["2 cups flour", "1 cup milk"]
    assert [s["step_text"] for s in detail["steps"]] == ["Mix", "Cook until golden."]
    assert detail["import"]["status"] == "succeeded"
    assert detail["import"]["attempt_count"] == 1
    assert detail["import"]["error_code"] is None
    assert detail["import"]["metadata"]["final_url"] == SOURCE_URL
    assert detail["import"]["metadata"]["extraction"]["title"] == "Best Pancakes"


def test_import_harvests_images(client, user_headers, db_session, mock_store, png_bytes):
    extracted = _extracted(images=[
        "/img/stack.jpg",
        "https://cdn.example.com/plate.png",
        "https://cdn.example.com/anim.gif",
        "https://cdn.example.com/plate.png",
    ])
    with pipeline(extracted=extracted, download=AsyncMock(return_value=png_bytes)) as mocks:
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    fetched = [c.args[1] for c in mocks["download"].await_args_list]
    assert fetched == ["https://example.com/img/stack.jpg", "https://cdn.example.com/plate.png"]

    keys = [c.kwargs["key"] for c in mock_store.put_bytes.call_args_list]
    assert len(keys) == 2
    assert all(k.startswith(f"{USER_ID}/{recipe_id}/") and k.endswith(".png") for k in keys)

    detail = client.get(f"/api/recipes/{recipe_id}", headers=user_headers).json()
    assert [img["position"] for img in detail["recipe_images"]] == [0, 1]
    assert detail["recipe_images"][0]["width"] == 8
    assert detail["recipe_images"][0]["url"].startswith("https://signed.example/")
    report = detail["import"]["metadata"]["images"]
    assert [r["status"] for r in report] == ["stored", "stored"]


def test_image_failures_do_not_fail_import(client, user_headers, mock_store):
    download = AsyncMock(side_effect=httpx.ConnectError("unreachable"))
    with pipeline(extracted=_extracted(images=["https://cdn.example.com/a.jpg"]), download=download):
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    detail = client.get(f"/api/recipes/{recipe_id}", headers=user_headers).json()
    assert detail["recipe"]["status"] == "succeeded"
    assert detail["recipe_images"] == []
    assert detail["import"]["metadata"]["images"][0]["status"] == "skipped"
    mock_store.put_bytes.assert_not_called()


def test_invalid_image_bytes_are_skipped(client, user_headers, mock_store):
    download = AsyncMock(return_value=b"<html>not an image</html>")
    with pipeline(extracted=_extracted(images=["https://cdn.example.com/a.jpg"]), download=download):
        res = _start_import(client, user_headers)

    detail = client.get(f"/api/recipes/{res.json()['recipe']['id']}", headers=user_headers).json()
    assert detail["recipe"]["status"] == "succeeded"
    assert detail["recipe_images"] == []
    mock_store.put_bytes.assert_not_called()


def test_corrupt_png_is_skipped(client, user_headers, db_session, mock_store, corrupt_png_bytes):
    download = AsyncMock(return_value=corrupt_png_bytes)
    with pipeline(extracted=_extracted(images=["https://cdn.example.com/a.png"]), download=download):
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    recipe = db_session.get(Recipe, recipe_id)
    record = db_session.query(RecipeImport).filter_by(recipe_id=recipe_id).one()
    assert recipe.status == "succeeded"
    assert recipe.error_message is None
    assert record.status == "succeeded"
    assert record.error_code is None
    assert db_session.query(RecipeIngredient).filter_by(recipe_id=recipe_id).count() == 2
    assert record.import_metadata["images"] == [
        {"url": "https://cdn.example.com/a.png", "status": "skipped", "reason": "File is not a valid image."}
    ]
    mock_store.put_bytes.assert_not_called()


def test_harvest_crash_keeps_saved_recipe(client, user_headers, db_session, png_bytes):
    store_image = MagicMock(side_effect=RuntimeError("boom"))
    extracted = _extracted(images=["https://cdn.example.com/a.png"])
    with pipeline(extracted=extracted, download=AsyncMock(return_value=png_bytes)), \
         patch("recipebox.services.recipe_import.store_recipe_image", store_image):
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    store_image.assert_called_once()
    recipe = db_session.get(Recipe, recipe_id)
    record = db_session.query(RecipeImport).filter_by(recipe_id=recipe_id).one()
    assert recipe.status == "succeeded"
    assert record.status == "succeeded"
    assert record.error_code is None
    assert db_session.query(RecipeStep).filter_by(recipe_id=recipe_id).count() == 2


@pytest.mark.parametrize("code", ["fetch_failed", "unsupported_content"])
def test_fetch_failure_marks_both_rows_failed(client, user_headers, db_session, code):
    fetch = AsyncMock(side_effect=ImportPipelineError(code, "Could not reach the recipe page."))
    with pipeline(fetch=fetch) as mocks:
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    mocks["generate"].assert_not_awaited()
    recipe = db_session.get(Recipe, recipe_id)
    record = db_session.query(RecipeImport).filter_by(recipe_id=recipe_id).one()
    assert recipe.status == "failed"
    assert recipe.error_message == "Could not reach the recipe page."
    assert record.status == "failed"
    assert record.error_code == code
    assert record.attempt_count == 1
    assert db_session.query(RecipeIngredient).filter_by(recipe_id=recipe_id).count() == 0
    assert db_session.query(RecipeStep).filter_by(recipe_id=recipe_id).count() == 0


def test_database_error_on_save_marks_persist_failed(client, user_headers, db_session):
    save = recipe_import._persist_extraction

    def save_with_failing_commit(db, *args):
        with patch.object(db, "commit", side_effect=SQLAlchemyError("disk full")):
            save(db, *args)

    with pipeline(), patch("recipebox.services.recipe_import._persist_extraction", save_with_failing_commit):
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    recipe = db_session.get(Recipe, recipe_id)
    record = db_session.query(RecipeImport).filter_by(recipe_id=recipe_id).one()
    assert recipe.status == "failed"
    assert recipe.title == "Importing recipe"
    assert recipe.error_message == "Failed to save the imported recipe."
    assert record.status == "failed"
    assert record.error_code == "persist_failed"
    assert record.attempt_count == 1
    assert db_session.query(RecipeIngredient).filter_by(recipe_id=recipe_id).count() == 0
    assert db_session.query(RecipeStep).filter_by(recipe_id=recipe_id).count() == 0


def test_unexpected_error_marks_import_failed(client, user_headers, db_session):
    with pipeline() as mocks, \
         patch("recipebox.services.recipe_import.sanitize_html", side_effect=RuntimeError("boom")):
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    mocks["generate"].assert_not_awaited()
    recipe = db_session.get(Recipe, recipe_id)
    record = db_session.query(RecipeImport).filter_by(recipe_id=recipe_id).one()
    assert recipe.status == "failed"
    assert recipe.error_message == "Unexpected error while importing the recipe."
    assert record.status == "failed"
    assert record.error_code == "import_failed"
    assert db_session.query(RecipeIngredient).filter_by(recipe_id=recipe_id).count() == 0


def test_mock_ai_mode_fails_extraction(client, user_headers, db_session):
    fetch = AsyncMock(return_value=(SOURCE_URL, PAGE_HTML))
    with patch("recipebox.services.recipe_import.fetch_page", fetch):
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    record = db_session.query(RecipeImport).filter_by(recipe_id=recipe_id).one()
    assert record.status == "failed"
    assert record.error_code == "extraction_failed"
    assert db_session.get(Recipe, recipe_id).status == "failed"


def test_extraction_without_steps_is_invalid(client, user_headers, db_session):
    with pipeline(extracted=_extracted(steps=[])):
        res = _start_import(client, user_headers)
    recipe_id = res.json()["recipe"]["id"]

    record = db_session.query(RecipeImport).filter_by(recipe_id=recipe_id).one()
    assert record.error_code == "invalid_extraction"
    recipe = db_session.get(Recipe, recipe_id)
    assert recipe.status == "failed"
    assert recipe.title == "Importing recipe"
    assert db_session.query(RecipeIngredient).filter_by(recipe_id=recipe_id).count() == 0


def test_import_duplicate_url_conflicts(client, user_headers, other_user_headers):
    with pipeline(fetch=AsyncMock(side_effect=ImportPipelineError("fetch_failed", "down"))):
        assert _start_import(client, user_headers).status_code == 202
        assert _start_import(client, user_headers).status_code == 409
        assert _start_import(client, other_user_headers).status_code == 202


def test_import_rejects_invalid_url(client, user_headers):
    res = client.post("/api/recipes/import", json={"source_url": "not a url"}, headers=user_headers)
    assert res.status_code == 422


def test_retry_failed_import(client, user_headers):
    with pipeline(fetch=AsyncMock(side_effect=ImportPipelineError("fetch_failed", "down"))):
        recipe_id = _start_import(client, user_headers).json()["recipe"]["id"]

    with pipeline():
        res = client.post(f"/api/recipes/{recipe_id}/import/retry", headers=user_headers)
    assert res.status_code == 202
    assert res.json()["recipe"]["status"] == "processing"
    assert res.json()["import"]["error_code"] is None

    detail = client.get(f"/api/recipes/{recipe_id}", headers=user_headers).json()
    assert detail["recipe"]["status"] == "succeeded"
    assert detail["recipe"]["error_message"] is None
    assert detail["import"]["attempt_count"] == 2
    assert len(detail["ingredients"]) == 2


def test_retry_requires_failed_import(client, user_headers):
    with pipeline():
        recipe_id = _start_import(client, user_headers).json()["recipe"]["id"]

    res = client.post(f"/api/recipes/{recipe_id}/import/retry", headers=user_headers)
    assert res.status_code == 409

    manual = client.post(
        "/api/recipes",
        json={
            "title": "Toast",
            "ingredients": [{"raw_text": "bread", "normalized_name": "bread"}],
            "steps": [{"step_text": "Toast it."}],
        },
        headers=user_headers,
    ).json()
    res = client.post(f"/api/recipes/{manual['recipe']['id']}/import/retry", headers=user_headers)
    assert res.status_code == 409

    res = client.post(f"/api/recipes/{uuid.uuid4()}/import/retry", headers=user_headers)
    assert res.status_code == 404


def test_list_recipe_imports(client, user_headers, other_user_headers):
    fetch = AsyncMock(side_effect=ImportPipelineError("fetch_failed", "down"))
    with pipeline(fetch=fetch):
        _start_import(client, user_headers, url="https://example.com/a")
    with pipeline():
        _start_import(client, user_headers, url="https://example.com/b")

    body = client.get("/api/recipe-imports", headers=user_headers).json()
    assert [r["source_url"] for r in body["data"]] == ["https://example.com/b", "https://example.com/a"]

    failed = client.get("/api/recipe-imports", params={"status": "failed"}, headers=user_headers).json()
    assert [r["source_url"] for r in failed["data"]] == ["https://example.com/a"]

    assert client.get("/api/recipe-imports", headers=other_user_headers).json()["data"] == []


def test_import_idempotency_key_replays(client, user_headers, db_session):
    key = {"Idempotency-Key": str(uuid.uuid4())}
    with pipeline(fetch=AsyncMock(side_effect=ImportPipelineError("fetch_failed", "down"))) as mocks:
        first = _start_import(client, user_headers, extra_headers=key)
        second = _start_import(client, user_headers, extra_headers=key)

    assert first.status_code == 202
    assert second.status_code == 202
    assert second.json() == first.json()
    assert mocks["fetch"].await_count == 1
    assert db_session.query(Recipe).count() == 1


def test_import_idempotency_key_reused_with_other_payload(client, user_headers):
    key = {"Idempotency-Key": str(uuid.uuid4())}
    with pipeline(fetch=AsyncMock(side_effect=ImportPipelineError("fetch_failed", "down"))):
        _start_import(client, user_headers, extra_headers=key)
        res = _start_import(client, user_headers, url="https://example.com/other", extra_headers=key)
    assert res.status_code == 409
