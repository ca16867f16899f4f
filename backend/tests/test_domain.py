"""
Tests for domain models.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from smartkhabar.models.domain import (
    ArticleMetadata,
    ChunkMetadata,
    DateRange,
    Interaction,
    InteractionAction,
    InteractionRecord,
    UserPreferences,
)


class TestInteractionAction:
    def test_polarity(self):
        assert InteractionAction.LIKE.is_positive
        assert InteractionAction.READ_MORE.is_positive
        assert InteractionAction.SHARE.is_positive
        assert InteractionAction.HIDE.is_negative
        assert not InteractionAction.HIDE.is_positive


class TestUserPreferences:
    """Tests for the preference value type."""

    def test_defaults(self):
        prefs = UserPreferences(user_id="u1")

        assert prefs.topics == ()
        assert prefs.reading_time == 5
        assert prefs.tone.value == "casual"

    def test_collections_are_deduplicated_in_order(self):
        prefs = UserPreferences(user_id="u1", topics=["ai", "science", "ai"])

        assert prefs.topics == ("ai", "science")

    def test_overlapping_sources_rejected(self):
        with pytest.raises(ValidationError):
            UserPreferences(user_id="u1", preferred_sources=("bbc",), excluded_sources=("bbc",))

    def test_reading_time_bounds(self):
        with pytest.raises(ValidationError):
            UserPreferences(user_id="u1", reading_time=16)
        with pytest.raises(ValidationError):
            UserPreferences(user_id="u1", reading_time=0)

    def test_frozen(self):
        prefs = UserPreferences(user_id="u1")

        with pytest.raises(ValidationError):
            prefs.topics = ("ai",)

    def test_add_excluded_removes_preferred(self):
        prefs = UserPreferences(user_id="u1", preferred_sources=("bbc", "cnn"))

        updated = prefs.add_excluded_source("bbc")

        assert updated.preferred_sources == ("cnn",)
        assert updated.excluded_sources == ("bbc",)
        assert prefs.preferred_sources == ("bbc", "cnn")

    def test_add_preferred_removes_excluded(self):
        prefs = UserPreferences(user_id="u1", excluded_sources=("fox",))

        updated = prefs.add_preferred_source("fox").add_preferred_source("fox")

        assert updated.preferred_sources == ("fox",)
        assert updated.excluded_sources == ()

    def test_source_round_trip_stays_exclusive(self):
        prefs = UserPreferences(user_id="u1")
        for source in ("bbc", "cnn", "bbc", "fox", "cnn"):
            prefs = prefs.add_preferred_source(source).add_excluded_source(source)
            prefs = prefs.add_preferred_source(source)
            assert not set(prefs.preferred_sources) & set(prefs.excluded_sources)

        assert set(prefs.preferred_sources) == {"bbc", "cnn", "fox"}
        assert prefs.excluded_sources == ()

    def test_sources_compared_case_insensitively(self):
        with pytest.raises(ValidationError):
            UserPreferences(user_id="u1", preferred_sources=("TechCrunch",), excluded_sources=("techcrunch",))

        prefs = UserPreferences(user_id="u1", preferred_sources=["BBC", "bbc", "Reuters"])
        assert prefs.preferred_sources == ("BBC", "Reuters")

    def test_excluding_other_casing_removes_preferred(self):
        prefs = UserPreferences(user_id="u1", preferred_sources=("TechCrunch", "wired"))

        updated = prefs.add_excluded_source("techcrunch")

        assert updated.preferred_sources == ("wired",)
        assert updated.excluded_sources == ("techcrunch",)
        assert updated.add_preferred_source("TECHCRUNCH").excluded_sources == ()

    def test_with_changes_validates(self):
        prefs = UserPreferences(user_id="u1")

        with pytest.raises(ValidationError):
            prefs.with_changes(reading_time=99)


class TestInteractionRecord:
    def test_metadata_accessors(self):
        record = InteractionRecord(
            interaction=Interaction(user_id="u1", article_id="a1", action="like"),
            article=ArticleMetadata(source="bbc", tags=["ai", "", None]),
        )

        assert record.source == "bbc"
        assert record.category is None
        assert record.tags == ("ai",)
        assert record.action == InteractionAction.LIKE

    def test_missing_article(self):
        record = InteractionRecord(
            interaction=Interaction(user_id="u1", article_id="a1", action="hide"),
        )

        assert record.source is None
        assert record.tags == ()


class TestTimestampNormalization:
    """Aware datetimes are stored as naive UTC."""

    AWARE = datetime(2026, 3, 1, 17, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))
    NAIVE_UTC = datetime(2026, 3, 1, 12, 0)

    def test_interaction_timestamp(self):
        interaction = Interaction(user_id="u1", article_id="a1", action="like", timestamp=self.AWARE)

        assert interaction.timestamp == self.NAIVE_UTC
        assert interaction.timestamp.tzinfo is None

    def test_iso_string_with_z_suffix(self):
        interaction = Interaction(
            user_id="u1", article_id="a1", action="like", timestamp="2026-03-01T12:00:00Z"
        )

        assert interaction.timestamp == self.NAIVE_UTC

    def test_chunk_published_at_and_date_range(self):
        assert ChunkMetadata(published_at=self.AWARE).published_at == self.NAIVE_UTC
        assert ChunkMetadata().published_at is None

        date_range = DateRange(start=self.AWARE, end=self.NAIVE_UTC)
        assert date_range.start == date_range.end

    def test_naive_values_unchanged(self):
        interaction = Interaction(user_id="u1", article_id="a1", action="like", timestamp=self.NAIVE_UTC)

        assert interaction.timestamp == self.NAIVE_UTC
