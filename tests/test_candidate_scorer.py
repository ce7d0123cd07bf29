"""Tests for candidate ranking."""

import random

import pytest

from price_tracker.ingest.candidate_scorer import (
    CandidateObservation,
    position_score,
    rank_candidates,
    score_candidate,
    select_best_candidate,
)


def test_buy_box_beats_strike_price():
    strike = CandidateObservation(
        index=0, text="3,43€", vertical_position=3265, is_visible=True, context_hint="strike wasprice"
    )
    buy_box = CandidateObservation(
        index=1, text="329,00€", vertical_position=280, is_visible=True, context_hint="buybox coreprice"
    )

    best = select_best_candidate([strike, buy_box], "EUR")
    assert best is not None
    assert best.observation is buy_box
    assert best.parsed.numeric == pytest.approx(329.0)
    assert best.parsed.currency == "EUR"


def test_strike_never_outranks_visible_buy_box_even_far_down():
    strike = CandidateObservation(
        index=0, text="399,00 €", vertical_position=100, is_visible=True, context_hint="a-text-price basisprice"
    )
    buy_box = CandidateObservation(
        index=500, text="329,00 €", vertical_position=90000, is_visible=True, context_hint="corePrice_feature_div"
    )
    assert select_best_candidate([strike, buy_box], "EUR").observation is buy_box


def test_strike_inside_core_price_block_is_bounded():
    strike = CandidateObservation(
        index=0,
        text="399,00 €",
        vertical_position=300,
        is_visible=True,
        context_hint="corePriceDisplay_desktop_feature_div a-text-price basisprice",
    )
    buy_box = CandidateObservation(
        index=24,
        text="329,00 €",
        vertical_position=300,
        is_visible=True,
        context_hint="corePriceDisplay_desktop_feature_div priceToPay",
    )

    # visible + fold + buy-box keyword - non-buyable penalty
    assert score_candidate(strike) == pytest.approx(105.0)
    assert score_candidate(buy_box) == pytest.approx(141.0)
    assert select_best_candidate([strike, buy_box], "EUR").observation is buy_box


def test_winner_is_independent_of_input_order():
    observations = [
        CandidateObservation(index=i, text=f"{10 + i},00 €", vertical_position=200 * i, is_visible=i % 2 == 0)
        for i in range(8)
    ]
    expected = select_best_candidate(observations, "EUR").observation.index

    rng = random.Random(7)
    for _ in range(5):
        shuffled = observations[:]
        rng.shuffle(shuffled)
        assert select_best_candidate(shuffled, "EUR").observation.index == expected


def test_ties_go_to_earliest_index():
    boosted = CandidateObservation(index=1, text="29,99 €", bonus=1.0)
    first = CandidateObservation(index=0, text="19,99 €")
    assert score_candidate(boosted) == score_candidate(first)
    assert select_best_candidate([boosted, first], "EUR").observation is first


def test_unparseable_and_non_positive_candidates_are_dropped():
    observations = [
        CandidateObservation(index=0, text="Preis nicht verfügbar"),
        CandidateObservation(index=1, text="0,00 €"),
        CandidateObservation(index=2, text=""),
    ]
    assert rank_candidates(observations, "EUR") == []
    assert select_best_candidate(observations, "EUR") is None


def test_used_offer_penalized():
    used = CandidateObservation(index=0, text="199,00 €", is_visible=True, context_hint="Used - Very Good")
    new = CandidateObservation(index=1, text="249,00 €", is_visible=True)
    assert select_best_candidate([used, new], "EUR").observation is new


def test_position_score_band():
    assert position_score(None) == 0
    assert position_score(0) == 30
    assert position_score(1200) == 30
    assert position_score(1700) == pytest.approx(-5)
    assert position_score(100000) == -30
