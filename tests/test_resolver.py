import pytest

from conftest import build_exercises
from iron_coach.context import to_candidate
from iron_coach.resolver import (
    normalize_exercise_name,
    normalize_tokens,
    resolve_exercise_id,
    resolve_template_exercises,
    singularize,
)
from iron_coach.store import Exercise

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def test_singularize():
    assert singularize("squats") == "squat"
    assert singularize("flies") == "fly"
    assert singularize("presses") == "press"
    assert singularize("abs") == "abs"
    assert singularize("press") == "press"

def test_normalize_expands_abbreviations():
    assert normalize_tokens("DB Bench") == ["dumbbell", "bench"]
    assert normalize_exercise_name("RDLs") == "rdl"
    assert normalize_exercise_name("rdl") == "romanian deadlift"
    assert normalize_exercise_name("pushups") == "push up"

# ---------------------------------------------------------------------------
# resolve_exercise_id
# ---------------------------------------------------------------------------

def test_numeric_id_in_pool():
    result = resolve_exercise_id("6", all_exercises=build_exercises())
    assert result.status == "resolved"
    assert result.exercise_id == 6
    assert result.matched_by == "id_exact"

def test_alias_exact_match():
    result = resolve_exercise_id("OHP", all_exercises=build_exercises())
    assert result.status == "resolved"
    assert result.exercise_id == 7
    assert result.matched_by == "name_exact"

def test_candidates_take_precedence_over_library():
    candidates = [to_candidate(ex) for ex in build_exercises() if ex.id in (2, 4)]
    result = resolve_exercise_id("Back Squat", candidates=candidates, all_exercises=build_exercises())
    assert result.status == "needs_review"
    assert [s.exercise_id for s in result.suggestions] == [2]

def test_partial_coverage_below_threshold_needs_review():
    result = resolve_exercise_id("romanian deadlifts barbell", all_exercises=build_exercises())
    assert result.status == "needs_review"
    assert [s.exercise_id for s in result.suggestions] == [3]

def test_fuzzy_match_above_threshold():
    result = resolve_exercise_id("Standing Calf", all_exercises=build_exercises())
    assert result.status == "resolved"
    assert result.exercise_id == 5
    assert result.matched_by == "fuzzy"

def test_tie_goes_to_needs_review():
    pool = [
        Exercise(id=1, name="Incline Dumbbell Press"),
        Exercise(id=2, name="Incline Barbell Press"),
    ]
    result = resolve_exercise_id("incline press", all_exercises=pool)
    assert result.status == "needs_review"
    assert {s.exercise_id for s in result.suggestions} == {1, 2}

def test_multiple_exact_hits_need_review():
    pool = [Exercise(id=1, name="Row", aliases=["cable row"]), Exercise(id=2, name="Cable Row")]
    result = resolve_exercise_id("cable row", all_exercises=pool)
    assert result.status == "needs_review"
    assert [s.exercise_id for s in result.suggestions] == [2, 1]

def test_unknown_name_has_no_suggestions():
    result = resolve_exercise_id("Zercher Carry", all_exercises=build_exercises())
    assert result.status == "needs_review"
    assert result.suggestions == []

def test_empty_query_or_pool():
    assert resolve_exercise_id("", all_exercises=build_exercises()).status == "needs_review"
    assert resolve_exercise_id("Squat", all_exercises=[]).status == "needs_review"

def test_suggestions_are_capped():
    pool = [Exercise(id=i, name=f"Curl Variation {i}") for i in range(1, 8)]
    result = resolve_exercise_id("curl", all_exercises=pool, max_suggestions=2)
    assert result.status == "needs_review"
    assert len(result.suggestions) == 2

# ---------------------------------------------------------------------------
# resolve_template_exercises
# ---------------------------------------------------------------------------

class _Store:
    def __init__(self, exercises):
        self.exercises = list(exercises)
        self.created = []

    async def list_exercises(self):
        return list(self.exercises)

    async def create_custom_exercise(self, name):
        new_id = max(ex.id for ex in self.exercises) + 1
        self.exercises.append(Exercise(id=new_id, name=name, is_custom=True))
        self.created.append(name)
        return new_id

@pytest.mark.asyncio
async def test_template_alias_maps_without_creating():
    store = _Store(build_exercises())
    mapping = await resolve_template_exercises(
        [{"name": "Goblet Squat", "sets": 3, "reps": "10"}], store=store, create_missing=True
    )
    assert mapping.mapped_count == 1
    assert mapping.created_custom_count == 0
    assert store.created == []
    assert mapping.resolved_exercises[0].exercise_id == 2
    assert mapping.resolved_exercises[0].reps == 10

@pytest.mark.asyncio
async def test_template_unmapped_name_needs_review():
    store = _Store(build_exercises())
    mapping = await resolve_template_exercises(
        [{"name": "Zercher Carry"}, {"exerciseId": 8}], store=store
    )
    assert mapping.mapped_count == 1
    assert mapping.unresolved_count == 1
    assert mapping.needs_review[0].requested_name == "Zercher Carry"
    assert mapping.needs_review[0].suggestions == []
    assert mapping.mapping[1].match_source == "id"

@pytest.mark.asyncio
async def test_template_create_missing():
    store = _Store(build_exercises())
    mapping = await resolve_template_exercises(
        [{"exerciseName": "Zercher Carry"}], store=store, create_missing=True
    )
    assert store.created == ["Zercher Carry"]
    assert mapping.created_custom_count == 1
    assert mapping.mapped_count == 1
    assert mapping.needs_review == []
    assert mapping.mapping[0].created_custom is True

@pytest.mark.asyncio
async def test_template_unknown_id_without_name():
    mapping = await resolve_template_exercises([{"exerciseId": 404}], all_exercises=build_exercises())
    assert mapping.mapped_count == 0
    assert mapping.needs_review[0].requested_name == "Exercise #404"

@pytest.mark.asyncio
async def test_template_empty_draft():
    mapping = await resolve_template_exercises([], all_exercises=build_exercises())
    assert mapping.mapped_count == 0
    assert mapping.resolved_exercises == []
