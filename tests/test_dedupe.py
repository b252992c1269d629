from storyflow.services.dedupe import DedupePolicy, DedupeSnapshot, evaluate_duplicates, score_pair


def _snapshot(
    article_id: str,
    *,
    normalized_url: str | None = None,
    content_checksum: str | None = None,
    title: str | None = None,
    body: str | None = None,
    status: str = "processed",
) -> DedupeSnapshot:
    return DedupeSnapshot(
        article_id=article_id,
        normalized_url=normalized_url,
        content_checksum=content_checksum,
        title=title,
        body=body,
        status=status,
    )


def test_exact_checksum_match_is_auto_discarded() -> None:
    incoming = _snapshot("incoming", normalized_url="https://a.example/2", content_checksum="abc", title="Other")
    existing = [_snapshot("existing-1", normalized_url="https://a.example/1", content_checksum="abc", title="Story")]

    decision = evaluate_duplicates(incoming=incoming, recent=existing)

    assert decision.outcome == "auto_discard"
    assert decision.matches[0].original_id == "existing-1"
    assert decision.matches[0].detection_method == "content_checksum"
    assert decision.matches[0].similarity_score == 1.0


def test_checksum_match_goes_to_review_when_auto_discard_disabled() -> None:
    incoming = _snapshot("incoming", content_checksum="abc", title="Harbour budget")
    existing = [_snapshot("existing-1", content_checksum="abc", title="Harbour budget")]

    decision = evaluate_duplicates(
        incoming=incoming,
        recent=existing,
        policy=DedupePolicy(auto_discard_checksum=False),
    )

    assert decision.outcome == "needs_review"


def test_similar_titles_route_to_review() -> None:
    incoming = _snapshot("incoming", title="Council approves harbour budget for 2026", body="first report text")
    existing = [
        _snapshot("existing-1", title="Council approves the harbour budget for 2026", body="different words here"),
        _snapshot("existing-2", title="Weather warning issued for coast", body="storm storm storm"),
    ]

    decision = evaluate_duplicates(incoming=incoming, recent=existing)

    assert decision.outcome == "needs_review"
    assert [match.original_id for match in decision.matches] == ["existing-1"]
    assert decision.matches[0].detection_method == "title_similarity"
    assert decision.methods == ["title_similarity"]


def test_terminal_articles_are_not_compared() -> None:
    incoming = _snapshot("incoming", content_checksum="abc")
    existing = [
        _snapshot("discarded-1", content_checksum="abc", status="discarded"),
        _snapshot("archived-1", content_checksum="abc", status="archived"),
    ]

    decision = evaluate_duplicates(incoming=incoming, recent=existing)

    assert decision.outcome == "none"
    assert decision.matches == []


def test_matches_below_threshold_are_ignored() -> None:
    incoming = _snapshot("incoming", title="Harbour budget approved")
    existing = [_snapshot("existing-1", title="Harbour festival opens")]

    decision = evaluate_duplicates(incoming=incoming, recent=existing, policy=DedupePolicy(review_threshold=0.75))

    assert decision.outcome == "none"


def test_score_pair_prefers_exact_url() -> None:
    incoming = _snapshot("incoming", normalized_url="https://a.example/1", content_checksum="abc")
    existing = _snapshot("existing-1", normalized_url="https://a.example/1", content_checksum="abc")

    match = score_pair(incoming=incoming, existing=existing)

    assert match is not None
    assert match.detection_method == "exact_url"


def test_matches_are_capped_and_ranked_by_score() -> None:
    incoming = _snapshot("incoming", content_checksum="abc", body="same text")
    existing = [_snapshot(f"existing-{index}", content_checksum="abc", body="same text") for index in range(8)]

    decision = evaluate_duplicates(incoming=incoming, recent=existing, policy=DedupePolicy(max_matches=3))

    assert [match.original_id for match in decision.matches] == ["existing-0", "existing-1", "existing-2"]


def test_empty_articles_do_not_match_on_checksum() -> None:
    incoming = _snapshot("incoming", normalized_url="https://b.example/two", content_checksum="empty", title=" ")
    existing = [_snapshot("existing-1", normalized_url="https://a.example/one", content_checksum="empty")]

    assert score_pair(incoming=incoming, existing=existing[0]) is None
    assert evaluate_duplicates(incoming=incoming, recent=existing).outcome == "none"


def test_non_latin_titles_are_compared() -> None:
    incoming = _snapshot("incoming", title="Belediye liman bütçesini onayladı")
    existing = [_snapshot("existing-1", title="Belediye liman bütçesini onayladı bugün")]

    decision = evaluate_duplicates(incoming=incoming, recent=existing, policy=DedupePolicy(review_threshold=0.75))

    assert decision.outcome == "needs_review"
    assert decision.matches[0].detection_method == "title_similarity"


def test_cyrillic_titles_produce_tokens() -> None:
    incoming = _snapshot("incoming", title="Совет утвердил бюджет гавани")
    existing = _snapshot("existing-1", title="Совет утвердил бюджет гавани")

    match = score_pair(incoming=incoming, existing=existing)

    assert match is not None
    assert match.similarity_score == 1.0
