from journey_attribution.services_engagement import calculate_engagement_score


def test_engagement_score_adds_capped_components():
    tps = [{"page_views": 1, "interactions": 0}, {"page_views": 2, "interactions": 1}]
    # 2 touchpoints -> 10, 3 page views -> 6, 1 interaction -> 5
    assert calculate_engagement_score(tps, converted=False) == 21.0
    assert calculate_engagement_score(tps, converted=True) == 46.0


def test_engagement_score_components_saturate():
    tps = [{"page_views": 4, "interactions": 3} for _ in range(8)]
    # 30 + 20 + 25 without conversion
    assert calculate_engagement_score(tps, converted=False) == 75.0
    assert calculate_engagement_score(tps, converted=True) == 100.0


def test_engagement_score_handles_empty_and_missing_counters():
    assert calculate_engagement_score([], converted=False) == 0.0
    assert calculate_engagement_score([], converted=True) == 25.0
    assert calculate_engagement_score([{}], converted=False) == 5.0
