"""
Tests for Hybrid Search

Tests the vector tier, the lexical fallbacks, embedding metadata checks,
ranking invariants and input validation.
"""

import pytest
from unittest.mock import Mock
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import EmbeddingMismatchError, InvalidInputError
from core.metrics import SearchMetrics
from database.models import EmbeddingMeta, NoteChunk
from core.config import VaultConfig, EmbeddingConfig
from search.hybrid_search import (
    HybridSearcher, MAX_TOP_K, SNIPPET_LENGTH, search_vault, create_searcher, check_embedding_meta,
)
from search.lexical import FTS_PLACEHOLDER_SCORE, TIER_FTS, TIER_KEYWORD

from conftest import FakeProvider, make_note, build_vault, NOW, DAY


def assert_well_formed(results):
    """Scores in [0, 1], sorted non-increasing, one result per path."""
    scores = [r.score for r in results]
    assert all(0.0 <= s <= 1.0 for s in scores)
    assert scores == sorted(scores, reverse=True)
    paths = [r.path for r in results]
    assert len(paths) == len(set(paths))


class TestVectorTier:
    """Tests for vector-backed search."""

    def test_ranked_results(self, vector_vault, provider, fixed_clock):
        """Test closest note ranks first and results are not degraded."""
        searcher = HybridSearcher(vector_vault, provider, clock=fixed_clock)

        response = searcher.search('auth tokens', top_k=10)

        assert not response.degraded
        assert response.tier == 'vector'
        assert [r.path for r in response.results] == ['auth.md', 'deploy.md', 'cooking.md']
        assert response.results[0].score == 1.0
        assert_well_formed(response.results)

    def test_provider_called_with_query_purpose(self, vector_vault, provider, fixed_clock):
        """Test the query is embedded as a query, not a document."""
        HybridSearcher(vector_vault, provider, clock=fixed_clock).search('auth tokens')

        assert provider.calls == [('auth tokens', 'query')]

    def test_dedup_by_path(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test several close chunks of one note yield a single result."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('auth.md', 'intro', [1.0, 0.0, 0.0, 0.0]),
            NoteChunk(path='auth.md', chunk_id=1, chunk_heading='Tokens', text='tokens',
                      embedding=[0.9, 0.1, 0.0, 0.0], modified=NOW),
            NoteChunk(path='auth.md', chunk_id=2, chunk_heading='Sessions', text='sessions',
                      embedding=[0.8, 0.2, 0.0, 0.0], modified=NOW),
            make_note('other.md', 'other', [0.0, 1.0, 0.0, 0.0]),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('auth')

        assert [r.path for r in response.results] == ['auth.md', 'other.md']
        assert response.results[0].chunk_heading == '(full)'

    def test_recent_note_ranks_higher(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test identical notes are ordered by recency under the balanced profile."""
        vector = [1.0, 0.0, 0.0, 0.0]
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('old.md', 'same text', vector, modified=NOW - 365 * DAY, confidence=0.6),
            make_note('new.md', 'same text', vector, modified=NOW, confidence=0.6),
        ], fake_meta)

        response = HybridSearcher(repo, provider, profile='balanced', clock=fixed_clock).search('same text')

        assert [r.path for r in response.results] == ['new.md', 'old.md']
        assert response.results[0].score > response.results[1].score

    def test_equal_scores_ordered_by_path(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test ties break by path."""
        vector = [1.0, 0.0, 0.0, 0.0]
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('b.md', 'x', vector),
            make_note('a.md', 'x', vector),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('x')

        assert [r.path for r in response.results] == ['a.md', 'b.md']

    def test_profile_caps_results(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test the precise profile returns at most two results."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note(f'n{i}.md', 'x', [1.0, 0.0, 0.0, 0.0], confidence=0.9) for i in range(8)
        ], fake_meta)

        response = HybridSearcher(repo, provider, profile='precise', clock=fixed_clock).search('x', top_k=20)

        assert len(response.results) == 2

    def test_min_score_filters(self, vector_vault, provider, fixed_clock):
        """Test results under the profile threshold are dropped."""
        response = HybridSearcher(vector_vault, provider, profile='precise', clock=fixed_clock).search('auth')

        assert all(r.score >= 0.75 for r in response.results)
        assert 'cooking.md' not in [r.path for r in response.results]

    def test_domain_filter(self, vector_vault, provider, fixed_clock):
        """Test domain filter keeps only matching notes."""
        response = HybridSearcher(vector_vault, provider, clock=fixed_clock).search('auth', domain='ops')

        assert [r.path for r in response.results] == ['deploy.md']

    def test_private_notes_excluded(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test _PRIVATE notes never surface."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('_PRIVATE/keys.md', 'secret', [1.0, 0.0, 0.0, 0.0]),
            make_note('public.md', 'public', [0.0, 1.0, 0.0, 0.0]),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('secret')

        assert [r.path for r in response.results] == ['public.md']

    def test_snippet_truncated(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test snippets are capped."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('long.md', 'word ' * 400, [1.0, 0.0, 0.0, 0.0]),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('word')

        assert len(response.results[0].snippet) == SNIPPET_LENGTH

    def test_deterministic_after_reindex(self, vector_vault, provider, fixed_clock):
        """Test replacing unchanged notes yields the same ranking."""
        searcher = HybridSearcher(vector_vault, provider, clock=fixed_clock)
        before = searcher.search('auth tokens').to_dict()
        vectors = {
            'auth.md': [1.0, 0.0, 0.0, 0.0],
            'deploy.md': [0.0, 1.0, 0.0, 0.0],
            'cooking.md': [0.0, 0.0, 3.0, 0.0],
        }

        for note in vector_vault.all_notes():
            chunk = vector_vault.get_note(note.path)[0]
            chunk.embedding = vectors[note.path]
            vector_vault.replace_note(note.path, [chunk])

        after = searcher.search('auth tokens').to_dict()

        assert before == after

    def test_metrics_recorded(self, vector_vault, provider, fixed_clock):
        """Test a search event is recorded."""
        metrics = SearchMetrics()

        HybridSearcher(vector_vault, provider, metrics=metrics, clock=fixed_clock).search('auth')

        summary = metrics.get_summary()
        assert summary['total_searches'] == 1
        assert summary['tiers'] == {'vector': 1}


class TestDistanceThreshold:
    """Tests for the per-profile raw distance gate."""

    def test_far_candidates_dropped_before_normalisation(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test a distant outlier neither surfaces nor stretches the similarity range."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('near.md', 'x', [1.0, 0.0, 0.0, 0.0]),
            make_note('mid.md', 'x', [0.0, 1.0, 0.0, 0.0]),
            make_note('far.md', 'x', [20.0, 0.0, 0.0, 0.0]),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('x')

        assert [r.path for r in response.results] == ['near.md', 'mid.md']
        assert response.results[1].score == pytest.approx(0.375)

    def test_everything_too_far_falls_back(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test a lone distant candidate is not promoted to a confident match."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('far.md', 'sourdough starter', [16.5, 0.0, 0.0, 0.0]),
        ], fake_meta)

        precise = HybridSearcher(repo, provider, profile='precise', clock=fixed_clock).search('sourdough')
        balanced = HybridSearcher(repo, provider, profile='balanced', clock=fixed_clock).search('sourdough')

        assert precise.degraded
        assert precise.tier == TIER_FTS
        assert not balanced.degraded
        assert [r.path for r in balanced.results] == ['far.md']

    def test_pi_profile_searches(self, vector_vault, provider, fixed_clock):
        """Test the low-resource profile is usable end to end."""
        response = HybridSearcher(vector_vault, provider, profile='pi', clock=fixed_clock).search('auth')

        assert response.profile == 'pi'
        assert [r.path for r in response.results] == ['auth.md']
        assert all(r.score >= 0.65 for r in response.results)


class TestMetadataFilters:
    """Tests for domain, workstream and tag filters."""

    @pytest.fixture
    def tagged_vault(self, tmp_path, fake_meta):
        return build_vault(tmp_path / 'vault.db', [
            make_note('a.md', 'x', [1.0, 0.0, 0.0, 0.0], workstream='billing', tags=['Security', 'jwt']),
            make_note('b.md', 'x', [0.9, 0.1, 0.0, 0.0], workstream='platform', tags=['ops']),
            make_note('c.md', 'x', [0.0, 1.0, 0.0, 0.0], workstream='billing'),
        ], fake_meta)

    def test_domain_ignores_case(self, vector_vault, provider, fixed_clock):
        """Test a domain filter matches regardless of case."""
        response = HybridSearcher(vector_vault, provider, clock=fixed_clock).search('auth', domain='OPS')

        assert [r.path for r in response.results] == ['deploy.md']

    def test_domain_matches_whole_value(self, vector_vault, provider, fixed_clock):
        """Test a domain prefix does not match."""
        response = HybridSearcher(vector_vault, provider, clock=fixed_clock).search('auth', domain='op')

        assert response.results == []

    def test_workstream_filter(self, tagged_vault, provider, fixed_clock):
        """Test a workstream filter keeps only that workstream, ignoring case."""
        response = HybridSearcher(tagged_vault, provider, clock=fixed_clock).search('x', workstream='Billing')

        assert [r.path for r in response.results] == ['a.md', 'c.md']

    def test_tags_match_any(self, tagged_vault, provider, fixed_clock):
        """Test a note carrying any requested tag passes, ignoring case."""
        response = HybridSearcher(tagged_vault, provider, clock=fixed_clock).search(
            'x', tags=['SECURITY', 'unused']
        )

        assert [r.path for r in response.results] == ['a.md']

    def test_filters_combine(self, tagged_vault, provider, fixed_clock):
        """Test every given filter must hold."""
        response = HybridSearcher(tagged_vault, provider, clock=fixed_clock).search(
            'x', workstream='platform', tags=['ops', 'security']
        )

        assert [r.path for r in response.results] == ['b.md']

    def test_filters_apply_to_lexical_tiers(self, tagged_vault):
        """Test keyword-only search honours the tag filter."""
        response = HybridSearcher(tagged_vault, None).search('x', tags=['OPS'])

        assert response.degraded
        assert [r.path for r in response.results] == ['b.md']


class TestTitleSignals:
    """Tests for title keyword fusion, reserved slots, fuzzy fill and overlap boosts."""

    def test_strong_title_match_fused(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test a note titled with every query term overtakes a closer vector match."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('misc.md', 'x', [1.0, 0.0, 0.0, 0.0]),
            make_note('jwt-rotation.md', 'x', [0.0, 1.0, 0.0, 0.0]),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('jwt rotation')

        assert [r.path for r in response.results] == ['jwt-rotation.md', 'misc.md']
        assert response.results[0].score == pytest.approx(0.95)
        assert not response.degraded

    def test_slots_reserved_for_title_hits(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test a note found only by title displaces the weakest vector result."""
        notes = [make_note(f'n{i}.md', 'x', [1.0, 0.0, 0.0, 0.0]) for i in range(6)]
        notes.append(make_note('runbook.md', 'on-call steps'))
        repo = build_vault(tmp_path / 'vault.db', notes, fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('runbook')

        assert len(response.results) == 4
        assert response.results[0].path == 'runbook.md'
        assert response.results[0].distance == 0.0
        assert [r.path for r in response.results[1:]] == ['n0.md', 'n1.md', 'n2.md']
        assert_well_formed(response.results)

    def test_fuzzy_fill_catches_typo(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test an open slot is filled by a title one typo away from the query."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('misc.md', 'x', [1.0, 0.0, 0.0, 0.0]),
            make_note('deployment.md', 'blue-green'),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('deploymnt')

        assert [r.path for r in response.results] == ['misc.md', 'deployment.md']
        assert response.results[1].score == pytest.approx(0.55)

    def test_fuzzy_fill_respects_filters(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test typo matches outside the requested domain stay out."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('misc.md', 'x', [1.0, 0.0, 0.0, 0.0], domain='eng'),
            make_note('deployment.md', 'blue-green', domain='ops'),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('deploymnt', domain='eng')

        assert [r.path for r in response.results] == ['misc.md']

    def test_high_title_overlap_boost(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test a title naming the query outranks an otherwise identical note."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('misc.md', 'x', [1.0, 0.0, 0.0, 0.0]),
            make_note('checklist.md', 'x', [1.0, 0.0, 0.0, 0.0]),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('checklists')

        assert [r.path for r in response.results] == ['checklist.md', 'misc.md']
        assert [r.score for r in response.results] == [1.0, 0.875]

    def test_medium_title_overlap_boost(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test a long title with one matching word gets the smaller boost."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('misc.md', 'x', [1.0, 0.0, 0.0, 0.0]),
            make_note('template.md', 'x', [1.0, 0.0, 0.0, 0.0],
                      title='Quarterly Release Checklist Template Draft Notes'),
        ], fake_meta)

        response = HybridSearcher(repo, provider, clock=fixed_clock).search('checklists')

        assert [r.path for r in response.results] == ['template.md', 'misc.md']
        assert response.results[0].score == pytest.approx(0.925)


class TestFallbackTiers:
    """Tests for degraded lexical search."""

    def test_provider_unreachable(self, tmp_path, fake_meta, unavailable_provider):
        """Test an unreachable backend falls back to full-text search."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('auth.md', 'Rotating jwt-tokens weekly', [1.0, 0.0, 0.0, 0.0]),
        ], fake_meta)

        response = HybridSearcher(repo, unavailable_provider).search('jwt-tokens')

        assert response.degraded
        assert response.tier == TIER_FTS
        assert [r.path for r in response.results] == ['auth.md']
        assert response.results[0].score == FTS_PLACEHOLDER_SCORE

    def test_no_provider(self, vector_vault):
        """Test keyword-only mode never embeds."""
        response = HybridSearcher(vector_vault, None).search('sourdough')

        assert response.degraded
        assert [r.path for r in response.results] == ['cooking.md']

    def test_vault_without_vectors_skips_provider(self, tmp_path, provider):
        """Test a lite-mode vault does not call the provider."""
        repo = build_vault(tmp_path / 'vault.db', [make_note('auth.md', 'jwt tokens')])

        response = HybridSearcher(repo, provider).search('jwt')

        assert response.degraded
        assert provider.calls == []

    def test_keyword_tier(self, tmp_path):
        """Test substring matching when full-text finds nothing."""
        repo = build_vault(tmp_path / 'vault.db', [make_note('auth.md', 'oauth2flow')])

        response = HybridSearcher(repo).search('auth2')

        assert response.tier == TIER_KEYWORD
        assert [r.path for r in response.results] == ['auth.md']

    def test_no_results_is_not_an_error(self, tmp_path):
        """Test empty results are a normal outcome."""
        repo = build_vault(tmp_path / 'vault.db', [make_note('auth.md', 'jwt')])

        response = HybridSearcher(repo).search('sourdough')

        assert response.results == []
        assert response.degraded

    def test_provider_failure_recorded(self, vector_vault, unavailable_provider):
        """Test provider failures are counted."""
        metrics = SearchMetrics()

        HybridSearcher(vector_vault, unavailable_provider, metrics=metrics).search('auth')

        assert metrics.get_summary()['provider_failures'] == {'fake': 1}


class TestEmbeddingMetaCheck:
    """Tests for provider/model/dimension checks."""

    def test_dimension_change(self, tmp_path):
        """Test a 768-dim vault queried with a 1024-dim provider fails."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note('auth.md', 'jwt', [0.1] * 768),
        ], EmbeddingMeta(provider='ollama', model='nomic-embed-text', dimensions=768))
        provider = FakeProvider(name='ollama', model='mxbai-embed-large', dims=1024, default=[0.1] * 1024)

        with pytest.raises(EmbeddingMismatchError):
            HybridSearcher(repo, provider).search('jwt')

    def test_model_change(self, vector_vault):
        """Test a different model with the same size still fails."""
        provider = FakeProvider(model='other-model')

        with pytest.raises(EmbeddingMismatchError):
            HybridSearcher(vector_vault, provider).search('auth')

    def test_no_meta_checks_stored_dims(self, tmp_path):
        """Test vaults without recorded metadata are checked against blob size."""
        repo = build_vault(tmp_path / 'vault.db', [make_note('auth.md', 'jwt', [0.1] * 8)])

        with pytest.raises(EmbeddingMismatchError):
            HybridSearcher(repo, FakeProvider()).search('jwt')

    def test_mismatch_checked_before_distance(self, vector_vault):
        """Test the vector index is never consulted on mismatch."""
        searcher = HybridSearcher(vector_vault, FakeProvider(model='other-model'))
        searcher.vector_index = Mock()

        with pytest.raises(EmbeddingMismatchError):
            searcher.search('auth')

        searcher.vector_index.search.assert_not_called()

    def test_precomputed_vector_needs_provider(self, vector_vault):
        """Test a bare query vector cannot bypass the provider/model check."""
        searcher = HybridSearcher(vector_vault, None)
        searcher.vector_index = Mock()

        with pytest.raises(InvalidInputError):
            searcher.search('auth', query_vector=[1.0, 0.0, 0.0, 0.0])

        searcher.vector_index.search.assert_not_called()

    def test_recorded_meta_requires_provider_identity(self, vector_vault):
        """Test matching dimensions alone do not pass a vault with a recorded model."""
        with pytest.raises(EmbeddingMismatchError):
            check_embedding_meta(vector_vault, None, [1.0, 0.0, 0.0, 0.0])

    def test_precomputed_vector_with_provider(self, vector_vault, fixed_clock):
        """Test a shared vector is accepted alongside the provider that made it."""
        provider = FakeProvider()

        response = HybridSearcher(vector_vault, provider, clock=fixed_clock).search(
            'auth', query_vector=[1.0, 0.0, 0.0, 0.0]
        )

        assert not response.degraded
        assert response.results[0].path == 'auth.md'
        assert provider.calls == []


class TestInputValidation:
    """Tests for rejected input."""

    @pytest.mark.parametrize('query', ['', '   ', None])
    def test_empty_query(self, vector_vault, provider, query):
        """Test empty queries are rejected before any I/O."""
        with pytest.raises(InvalidInputError):
            HybridSearcher(vector_vault, provider).search(query)

        assert provider.calls == []

    def test_bad_top_k(self, vector_vault):
        """Test non-positive top_k is rejected."""
        with pytest.raises(InvalidInputError):
            HybridSearcher(vector_vault).search('auth', top_k=0)

    def test_top_k_capped(self, tmp_path, fake_meta, provider, fixed_clock):
        """Test top_k is capped even for the broad profile."""
        repo = build_vault(tmp_path / 'vault.db', [
            make_note(f'n{i:03d}.md', 'x', [1.0, 0.0, 0.0, 0.0]) for i in range(30)
        ], fake_meta)

        response = HybridSearcher(repo, provider, profile='broad', clock=fixed_clock).search(
            'x', top_k=MAX_TOP_K * 10
        )

        assert len(response.results) == 4

    def test_unknown_profile(self, vector_vault):
        """Test unknown profiles are rejected at construction."""
        with pytest.raises(InvalidInputError):
            HybridSearcher(vector_vault, profile='turbo')


class TestSearchVault:
    """Tests for the one-off helper."""

    def test_read_only(self, vector_vault, provider):
        """Test the helper opens the vault read-only."""
        response = search_vault('auth', vector_vault.db_path, provider, top_k=1)

        assert [r.path for r in response.results] == ['auth.md']


class TestCreateSearcher:
    """Tests for building a searcher from configuration."""

    def test_keyword_only_config(self, vector_vault):
        """Test provider 'none' yields a degraded lexical searcher."""
        config = VaultConfig(
            db_path=vector_vault.db_path,
            vault_name='work',
            embedding=EmbeddingConfig(provider='none'),
        )

        searcher = create_searcher(config)
        response = searcher.search('auth')

        assert searcher.provider is None
        assert searcher.vault_name == 'work'
        assert response.degraded
        assert response.tier == TIER_FTS
        assert [r.path for r in response.results] == ['auth.md']
