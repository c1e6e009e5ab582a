from datetime import datetime, timezone

import pytest

from services.recommendations import (
    add_recommendations,
    copy_unapplied_to,
    extract_recommendations_from_analysis,
    extract_score_delta,
    list_for_version,
    mark_applied,
    priority_to_confidence,
)
from services.script_versions import commit_or_conflict, create_version, ensure_project


PROJECT_ID = "project-recs"
SCENES = [
    {"sceneNumber": 1, "text": "Opening."},
    {"sceneNumber": 2, "text": "Middle."},
]


def test_extract_score_delta_reads_first_signed_integer():
    assert extract_score_delta("+15-20 points") == 15
    assert extract_score_delta("about -3 points") == -3
    assert extract_score_delta("no number here") is None
    assert extract_score_delta(None) is None
    assert extract_score_delta(8) == 8


def test_priority_maps_to_confidence():
    assert priority_to_confidence("critical") == 0.9
    assert priority_to_confidence("high") == 0.8
    assert priority_to_confidence("medium") == 0.6
    assert priority_to_confidence("LOW") == 0.4
    # Unknown priorities are treated as medium.
    assert priority_to_confidence("urgent") == 0.6


def test_extract_recommendations_keeps_only_applicable_rows():
    analysis = {
        "recommendations": [
            {"sceneNumber": 2, "priority": "high", "area": "pacing", "suggested": "Faster middle.", "expectedImpact": "+9 points"},
            {"sceneNumber": 0, "priority": "high", "suggested": "No scene"},
            {"sceneNumber": 3, "priority": "high", "suggested": "Past the end"},
            {"sceneNumber": 1, "priority": "medium", "suggested": "   "},
            {"sceneNumber": "1", "priority": "weird", "area": "vibes", "suggested": "Sharper opening."},
            "not-a-dict",
        ]
    }

    rows = extract_recommendations_from_analysis(analysis, total_scenes=2)

    assert [row["scene_number"] for row in rows] == [2, 1]
    assert rows[0]["score_delta"] == 9
    assert rows[0]["confidence"] == 0.8
    assert rows[0]["area"] == "pacing"
    assert rows[1]["priority"] == "medium"
    assert rows[1]["area"] == "general"
    assert rows[1]["score_delta"] is None
    assert extract_recommendations_from_analysis(None, 2) == []
    assert extract_recommendations_from_analysis({"recommendations": "oops"}, 2) == []


async def _version_with_recs(db):
    await ensure_project(db, PROJECT_ID)
    version = await create_version(
        db,
        project_id=PROJECT_ID,
        scenes=SCENES,
        created_by="human",
        provenance={"source": "initial"},
        make_current=True,
    )
    rows = add_recommendations(
        db,
        version.id,
        [
            {"scene_number": 2, "priority": "low", "suggested_text": "Second scene edit"},
            {"scene_number": 1, "priority": "high", "suggested_text": "First scene edit", "score_delta": 10},
        ],
    )
    await commit_or_conflict(db)
    return version, rows


@pytest.mark.asyncio
async def test_list_for_version_orders_by_scene(db):
    version, _ = await _version_with_recs(db)

    listed = await list_for_version(db, version.id)

    assert [row.scene_number for row in listed] == [1, 2]


@pytest.mark.asyncio
async def test_mark_applied_is_one_way(db):
    _, rows = await _version_with_recs(db)
    target = rows[0]

    first = await mark_applied(db, target.id)
    await db.commit()
    stamped = first.applied_at
    assert stamped is not None

    second = await mark_applied(db, target.id)
    await db.commit()
    assert second.applied_at == stamped
    assert await mark_applied(db, "missing") is None


@pytest.mark.asyncio
async def test_copy_unapplied_skips_applied_and_gets_new_ids(db):
    version, rows = await _version_with_recs(db)
    rows[0].applied_at = datetime.now(timezone.utc)
    await db.commit()

    successor = await create_version(
        db,
        project_id=PROJECT_ID,
        scenes=SCENES,
        created_by="human",
        provenance={"source": "manual_edit"},
        make_current=True,
    )
    await commit_or_conflict(db)

    # create_version already carried the outstanding row forward.
    carried = await list_for_version(db, successor.id)
    assert [row.suggested_text for row in carried] == ["First scene edit"]
    assert carried[0].id != rows[1].id
    assert carried[0].score_delta == 10
    assert carried[0].applied_at is None

    extra = await copy_unapplied_to(db, successor.id, version.id, exclude_ids=[rows[1].id])
    assert extra == []
