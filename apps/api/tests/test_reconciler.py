import copy

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from models.script_version import ScriptVersion
from services.errors import RecommendationAlreadyAppliedError, RecommendationNotFoundError
from services.recommendations import list_for_version, mark_applied
from services.reconciler import (
    apply_all_service,
    apply_all_with_fresh_service,
    apply_one_service,
    is_eligible,
    is_fresh,
    select_one_per_scene,
)
from services.script_versions import create_initial_version_service, get_current_version


PROJECT_ID = "project-reconcile"

SCENES = [
    {"sceneNumber": 1, "text": "Opening line."},
    {"sceneNumber": 2, "text": "Middle line."},
    {"sceneNumber": 3, "text": "Closing line."},
]


def _analysis(*recs):
    return {
        "overallScore": 58,
        "recommendations": [
            {
                "sceneNumber": scene,
                "priority": priority,
                "area": "general",
                "suggested": suggested,
                "expectedImpact": f"+{delta} points",
            }
            for scene, priority, delta, suggested in recs
        ],
    }


async def _seed(db, *recs):
    await create_initial_version_service(
        project_id=PROJECT_ID,
        scenes=copy.deepcopy(SCENES),
        analysis_result=_analysis(*recs),
        db=db,
    )
    current = await get_current_version(db, PROJECT_ID)
    return current, await list_for_version(db, current.id)


def test_eligibility_needs_priority_and_threshold():
    assert is_eligible({"priority": "high", "scoreDelta": 8}, threshold=6)
    assert is_eligible({"priority": "medium", "expectedImpact": "+6-9 points"}, threshold=6)
    assert not is_eligible({"priority": "low", "scoreDelta": 10}, threshold=6)
    assert not is_eligible({"priority": "critical", "scoreDelta": 20}, threshold=6)
    assert not is_eligible({"priority": "high", "scoreDelta": 5}, threshold=6)
    assert not is_eligible({"priority": "high"}, threshold=6)


def test_fresh_ids_are_negative_integers():
    assert is_fresh({"id": -1})
    assert not is_fresh({"id": 3})
    assert not is_fresh({"id": "-1"})
    assert not is_fresh({"id": True})


def test_one_recommendation_per_scene_by_rank():
    chosen = select_one_per_scene(
        [
            {"id": "a", "sceneNumber": 1, "priority": "medium", "scoreDelta": 15},
            {"id": "b", "sceneNumber": 1, "priority": "high", "scoreDelta": 7},
            {"id": "c", "sceneNumber": 2, "priority": "high", "scoreDelta": 7, "confidence": 0.5},
            {"id": "d", "sceneNumber": 2, "priority": "high", "scoreDelta": 7, "confidence": 0.8},
            {"id": "e", "sceneId": 3, "priority": "medium", "scoreDelta": 9},
        ]
    )

    assert {number: rec["id"] for number, rec in chosen.items()} == {1: "b", 2: "d", 3: "e"}


@pytest.mark.asyncio
async def test_only_fresh_suggestions_are_not_persisted(db):
    result = await apply_all_with_fresh_service(
        project_id=PROJECT_ID,
        baseline_scenes=copy.deepcopy(SCENES),
        recommendations=[
            {"id": -1, "sceneNumber": 1, "priority": "high", "scoreDelta": 8, "suggestedText": "Sharper opening."},
            {"id": -2, "sceneNumber": 2, "priority": "low", "scoreDelta": 10, "suggestedText": "Ignored."},
        ],
        threshold=6,
        db=db,
    )

    assert result["persisted"] is False
    assert result["newVersion"] is None
    assert [scene["text"] for scene in result["scenes"]] == ["Sharper opening.", "Middle line.", "Closing line."]
    assert result["freshApplied"] == 1
    assert result["affectedScenes"] == [1]
    assert result["needsReanalysis"] is True


@pytest.mark.asyncio
async def test_fresh_and_persisted_suggestions_are_merged(db):
    current, rows = await _seed(db, (2, "high", 9, "Stored middle."))
    persisted = rows[0]

    result = await apply_all_with_fresh_service(
        project_id=PROJECT_ID,
        baseline_scenes=copy.deepcopy(SCENES),
        recommendations=[
            {"id": -1, "sceneNumber": 1, "priority": "high", "scoreDelta": 8, "suggestedText": "Fresh opening."},
            {"id": -3, "sceneNumber": 3, "priority": "medium", "scoreDelta": 7, "suggested": "Fresh closing."},
            {
                "id": persisted.id,
                "sceneNumber": 2,
                "priority": "high",
                "scoreDelta": 9,
                "suggestedText": "Stored middle.",
            },
        ],
        threshold=6,
        db=db,
    )

    assert [scene["text"] for scene in result["scenes"]] == ["Fresh opening.", "Stored middle.", "Fresh closing."]
    assert result["persisted"] is True
    assert result["persistedApplied"] == 1
    assert result["freshApplied"] == 2
    assert result["affectedScenes"] == [1, 2, 3]

    new_version = result["newVersion"]
    assert new_version["versionNumber"] == 2
    assert new_version["parentVersionId"] == current.id
    # Only the stored suggestion reaches the persisted snapshot.
    assert [scene["text"] for scene in new_version["scenes"]] == ["Opening line.", "Stored middle.", "Closing line."]


@pytest.mark.asyncio
async def test_apply_all_filters_by_priority_and_delta(db):
    current, _ = await _seed(
        db,
        (1, "high", 8, "Better opening."),
        (1, "medium", 12, "Other opening."),
        (2, "low", 10, "Low priority middle."),
        (3, "medium", 3, "Small closing tweak."),
    )

    result = await apply_all_service(PROJECT_ID, db, threshold=6)

    assert result["appliedCount"] == 1
    assert result["affectedScenes"] == [{"sceneNumber": 1, "text": "Better opening."}]
    assert result["scenes"][0]["text"] == "Better opening."
    assert result["scenes"][0]["recommendationApplied"] is True
    assert result["scenes"][1]["text"] == "Middle line."

    carried = await list_for_version(db, result["newVersion"]["id"])
    assert sorted(row.suggested_text for row in carried) == [
        "Low priority middle.",
        "Other opening.",
        "Small closing tweak.",
    ]
    assert all(row.applied_at is None for row in carried)

    originals = await list_for_version(db, current.id)
    applied = [row for row in originals if row.applied_at is not None]
    assert [row.suggested_text for row in applied] == ["Better opening."]


@pytest.mark.asyncio
async def test_apply_all_without_eligible_rows_creates_nothing(db):
    await _seed(db, (2, "low", 10, "Low priority middle."))

    result = await apply_all_service(PROJECT_ID, db, threshold=6)

    assert result["newVersion"] is None
    assert result["appliedCount"] == 0
    count = await db.execute(select(func.count()).select_from(ScriptVersion))
    assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_apply_all_rejects_unknown_ids(db):
    await _seed(db, (1, "high", 8, "Better opening."))

    with pytest.raises(RecommendationNotFoundError):
        await apply_all_service(PROJECT_ID, db, recommendation_ids=["not-a-real-id"])


@pytest.mark.asyncio
async def test_apply_one_creates_version_and_carries_the_rest(db):
    current, rows = await _seed(
        db,
        (1, "high", 8, "Better opening."),
        (3, "medium", 7, "Follow for part two."),
    )
    first = next(row for row in rows if row.scene_number == 1)

    result = await apply_one_service(PROJECT_ID, first.id, db)

    new_version = result["newVersion"]
    assert new_version["isCurrent"] is True
    assert new_version["createdBy"] == "ai"
    assert new_version["scenes"][0]["text"] == "Better opening."
    assert new_version["changeSummary"]["recommendationId"] == first.id
    assert result["affectedScene"] == {"sceneNumber": 1, "text": "Better opening."}

    carried = await list_for_version(db, new_version["id"])
    assert [row.suggested_text for row in carried] == ["Follow for part two."]

    # The applied row stays on the superseded version.
    with pytest.raises(RecommendationNotFoundError):
        await apply_one_service(PROJECT_ID, first.id, db)


@pytest.mark.asyncio
async def test_apply_one_refuses_already_applied_row(db):
    _, rows = await _seed(db, (2, "high", 9, "Stored middle."))
    await mark_applied(db, rows[0].id)
    await db.commit()

    with pytest.raises(RecommendationAlreadyAppliedError):
        await apply_one_service(PROJECT_ID, rows[0].id, db)
