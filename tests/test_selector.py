import pytest

from voxdispatch.catalog import ProviderCatalog
from voxdispatch.errors import NoSuitableProvider
from voxdispatch.models import SelectionCriteria
from voxdispatch.selector import ProviderSelector

MIB = 1024 * 1024


def _descriptor(name, cost, tier, formats=("mp3", "wav"), size=100 * MIB, features=()):
    return {
        "name": name,
        "cost_per_minute": cost,
        "max_file_size_bytes": size,
        "supported_formats": list(formats),
        "quality_tier": tier,
        "features": list(features),
    }


@pytest.fixture
def selector():
    return ProviderSelector(ProviderCatalog.default())


def test_long_media_picks_cheapest(selector):
    assert selector.select("mp3", 10 * MIB, 700, None) == "deepgram"


def test_short_media_prefers_quality_then_cost(selector):
    # whisper, assemblyai and rev are all excellent; whisper is cheapest.
    assert selector.select("mp3", 5 * MIB, 30, None) == "whisper"


def test_short_media_respects_size_limits(selector):
    # Over whisper's 25 MiB limit: assemblyai is the cheapest excellent option left.
    assert selector.select("wav", 40 * MIB, 30, None) == "assemblyai"


def test_quality_beats_cost_for_short_media():
    catalog = ProviderCatalog(
        [_descriptor("cheap", 0.001, "good"), _descriptor("premium", 0.009, "excellent")]
    )
    assert ProviderSelector(catalog).select("mp3", MIB, 60, None) == "premium"
    assert ProviderSelector(catalog).select("mp3", MIB, 601, None) == "cheap"


def test_ties_break_on_name():
    catalog = ProviderCatalog(
        [_descriptor("zeta", 0.004, "good"), _descriptor("alpha", 0.004, "good")]
    )
    selector = ProviderSelector(catalog)
    assert selector.select("wav", MIB, 30, None) == "alpha"
    assert selector.select("wav", MIB, 3000, None) == "alpha"


def test_selection_is_deterministic(selector):
    picks = {selector.select("m4a", 3 * MIB, 90, None) for _ in range(10)}
    assert len(picks) == 1


def test_no_provider_for_format(selector):
    with pytest.raises(NoSuitableProvider) as excinfo:
        selector.select("xyz", MIB, 30, None)
    assert excinfo.value.context["format"] == "xyz"


def test_no_provider_for_size(selector):
    with pytest.raises(NoSuitableProvider):
        selector.select("mp3", 500 * MIB, 30, None)


def test_criteria_filter_features_cost_and_exclusions(selector):
    diarizing = SelectionCriteria(required_features=frozenset({"speaker_diarization"}))
    assert selector.select("mp3", MIB, 30, diarizing) == "speechmatics"

    budget = SelectionCriteria(max_cost_per_minute=0.0045)
    assert selector.select("mp3", MIB, 30, budget) == "deepgram"

    no_whisper = SelectionCriteria(exclude=frozenset({"whisper"}))
    assert selector.select("mp3", MIB, 30, no_whisper) == "assemblyai"


def test_unknown_format_skips_format_filter(selector):
    names = {d.name for d in selector.eligible(None, MIB)}
    assert names == {"whisper", "speechmatics", "assemblyai", "deepgram", "rev"}
