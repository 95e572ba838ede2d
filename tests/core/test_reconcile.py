"""
Tests for marketcycle.core.state_machine.reconcile — the pure diff of a
cycle against a ranking snapshot.
"""

from datetime import datetime, timedelta, timezone

from fakes import ranked
from marketcycle.core.state_machine import reconcile
from marketcycle.models import CrashedEntity, MarketCycle

NOW = datetime(2025, 1, 2, tzinfo=timezone.utc)


def _with_market(entity_id, score=1.0):
    return ranked(entity_id, score).model_copy(update={"market_address": f"0xm{entity_id}"})


def _cycle(active=(), crashed=()):
    start = NOW - timedelta(hours=1)
    return MarketCycle(
        id="cycle-1",
        start_time=start,
        end_time=start + timedelta(hours=72),
        global_expiry=start + timedelta(hours=72),
        active_entities=list(active),
        crashed_out_entities=list(crashed),
    )


def _crashed(entity_id, at=NOW - timedelta(minutes=30)):
    return CrashedEntity.from_entity(_with_market(entity_id), crashed_out_at=at)


def test_missing_market_holder_crashes_out_once():
    cycle = _cycle(active=[_with_market(1), _with_market(2)])

    result = reconcile(cycle, [ranked(1)], NOW)

    assert [e.id for e in result.cycle.active_entities] == [1]
    assert [c.id for c in result.newly_crashed] == [2]
    crashed = result.cycle.crashed_out_entities[0]
    assert crashed.market_address == "0xm2"
    assert crashed.crashed_out_at == NOW

    again = reconcile(result.cycle, [ranked(1)], NOW + timedelta(hours=1))
    assert again.newly_crashed == []
    assert len(again.cycle.crashed_out_entities) == 1
    assert again.cycle.crashed_out_entities[0].crashed_out_at == NOW


def test_entity_without_market_does_not_crash_out():
    cycle = _cycle(active=[_with_market(1), ranked(2)])

    result = reconcile(cycle, [ranked(1)], NOW)

    assert result.newly_crashed == []
    assert result.cycle.crashed_out_entities == []


def test_reentry_removes_from_crashed_and_keeps_market():
    cycle = _cycle(active=[_with_market(1)], crashed=[_crashed(2)])

    result = reconcile(cycle, [ranked(1), ranked(2, 9.0)], NOW)

    assert [c.id for c in result.recovered] == [2]
    assert result.cycle.crashed_out_entities == []
    reentered = result.cycle.active_entity(2)
    assert reentered.market_address == "0xm2"
    assert reentered.mindshare_score == 9.0
    assert result.to_deploy == []


def test_new_entities_are_queued_for_deployment():
    cycle = _cycle(active=[_with_market(1)])

    result = reconcile(cycle, [ranked(1), ranked(3), ranked(4)], NOW)

    assert result.to_deploy == [3, 4]


def test_existing_market_address_is_never_replaced():
    cycle = _cycle(active=[_with_market(1)])
    incoming = ranked(1).model_copy(update={"market_address": "0xother"})

    result = reconcile(cycle, [incoming], NOW)

    assert result.cycle.active_entity(1).market_address == "0xm1"


def test_duplicate_snapshot_ids_collapse():
    cycle = _cycle()

    result = reconcile(cycle, [ranked(1, 5.0), ranked(1, 2.0)], NOW)

    assert len(result.cycle.active_entities) == 1
    assert result.cycle.active_entities[0].mindshare_score == 5.0


def test_end_time_and_input_are_untouched():
    cycle = _cycle(active=[_with_market(1), _with_market(2)])

    result = reconcile(cycle, [ranked(1)], NOW)

    assert result.cycle.end_time == cycle.end_time
    assert [e.id for e in cycle.active_entities] == [1, 2]
    assert cycle.crashed_out_entities == []


def test_active_and_crashed_are_disjoint():
    cycle = _cycle(active=[_with_market(1), _with_market(2)], crashed=[_crashed(3)])

    result = reconcile(cycle, [ranked(2), ranked(3)], NOW)

    active_ids = {e.id for e in result.cycle.active_entities}
    crashed_ids = {c.id for c in result.cycle.crashed_out_entities}
    assert active_ids == {2, 3}
    assert crashed_ids == {1}
    assert active_ids.isdisjoint(crashed_ids)
