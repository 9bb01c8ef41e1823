#!/usr/bin/env python3
"""Command line entry points for the relevance engine.

Usage:
    relevance-engine init-db
    relevance-engine run 1 --provider gemini
    relevance-engine run-all
    relevance-engine learn 1 --force
    relevance-engine trust 1
    relevance-engine clear-digests 1 --count 2
    relevance-engine backfill-embeddings --articles
    relevance-engine prune-embeddings --days 30
"""

import argparse
import sys
from pathlib import Path

from relevance_engine import database
from relevance_engine.config import load_engine_config
from relevance_engine.constants import ENGINE_CONFIG_PATH
from relevance_engine.digest import clear_recent_digests, format_digest_summary
from relevance_engine.embeddings import backfill_embeddings, prune_embeddings
from relevance_engine.errors import RelevanceEngineError
from relevance_engine.models import RunResult, RunStatus
from relevance_engine.pipeline import run_preference_learning, run_relevance, run_relevance_for_all_users
from relevance_engine.providers import GeminiEmbeddingProvider, GeminiScoringProvider
from relevance_engine.source_trust import recompute_source_trust


def print_run_result(result: RunResult) -> None:
    print(
        f"User {result.user_id}: {result.status.value} in {result.duration_seconds:.2f}s - "
        f"{result.scored} scored ({result.fallback} fallback), {result.excluded} excluded, "
        f"{result.prefiltered} prefiltered, {result.deferred} deferred"
    )
    for error in result.errors:
        print(f"  [{error.stage}] {error.message} ({error.affected_count} affected)")
    if result.digest_id is not None:
        digest = database.get_digest(result.digest_id)
        if digest is not None:
            print("  " + format_digest_summary(
                digest,
                database.get_digest_stats(digest.id),
                database.get_digest_tier_counts(digest.id),
            ))
            for item in database.get_digest_articles(digest.id):
                ua = item.user_article
                print(f"    {ua.relevance_score:.2f} [{ua.digest_tier.value}] {item.article.title}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Score articles and assemble digests")
    parser.add_argument(
        "--config",
        type=Path,
        default=ENGINE_CONFIG_PATH,
        help=f"Engine config YAML (default: {ENGINE_CONFIG_PATH})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database schema")

    run = subparsers.add_parser("run", help="Score and assemble a digest for one user")
    run.add_argument("user_id", type=int)
    run.add_argument("--provider", default="gemini", help="Provider label stored on the digest")

    run_all = subparsers.add_parser("run-all", help="Run every active user")
    run_all.add_argument("--provider", default="gemini", help="Provider label stored on the digest")

    learn = subparsers.add_parser("learn", help="Learn preferences from feedback")
    learn.add_argument("user_id", type=int)
    learn.add_argument("--force", action="store_true", help="Use the lower forced feedback gate")

    trust = subparsers.add_parser("trust", help="Recompute source trust factors")
    trust.add_argument("user_id", type=int)

    clear = subparsers.add_parser("clear-digests", help="Reset recent digests for re-scoring")
    clear.add_argument("user_id", type=int)
    clear.add_argument("--count", type=int, default=1, help="Number of recent digests to clear")

    backfill = subparsers.add_parser("backfill-embeddings", help="Embed entries that have no embedding")
    backfill.add_argument("--articles", action="store_true", help="Also embed recent articles")
    backfill.add_argument("--days", type=int, default=7, help="Article age window in days")

    prune = subparsers.add_parser("prune-embeddings", help="Delete old article embeddings")
    prune.add_argument("--days", type=int, default=30, help="Keep embeddings of articles newer than this")

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = load_engine_config(args.config)
        database.init_db()

        if args.command == "init-db":
            print("Database initialised")
            return

        scoring_provider = GeminiScoringProvider(config.scoring_model)
        embedding_provider = GeminiEmbeddingProvider(config.embedding_model)

        if args.command == "run":
            result = run_relevance(
                args.user_id, args.provider, config, scoring_provider, embedding_provider
            )
            print_run_result(result)
            if result.status == RunStatus.FAILED:
                sys.exit(1)

        elif args.command == "run-all":
            results = run_relevance_for_all_users(
                args.provider, config, scoring_provider, embedding_provider
            )
            for result in results.values():
                print_run_result(result)
            print(f"Processed {len(results)} users")

        elif args.command == "learn":
            learning_provider = GeminiScoringProvider(config.scoring_model, purpose="learning")
            updated = run_preference_learning(args.user_id, config, learning_provider, force=args.force)
            print("Preferences updated" if updated else "Preferences unchanged")
            for preference in database.get_learned_preferences(args.user_id):
                print(f"  {preference.confidence:.2f} {preference.preference}")

        elif args.command == "trust":
            updated = recompute_source_trust(args.user_id, config)
            print(f"{updated} sources had enough feedback")
            for source in database.get_sources_for_user(args.user_id):
                trust = database.get_source_trust(args.user_id, source.id)
                if trust is not None:
                    print(f"  {trust.trust_factor:.2f} ({trust.sample_size} samples) {source.name}")

        elif args.command == "clear-digests":
            cleared = clear_recent_digests(args.user_id, args.count)
            print(f"Cleared {cleared} digests")

        elif args.command == "backfill-embeddings":
            expansion_provider = GeminiScoringProvider(config.scoring_model, purpose="expansion")
            created = backfill_embeddings(
                embedding_provider,
                config,
                scoring_provider=expansion_provider,
                include_articles=args.articles,
                article_days=args.days,
            )
            for ref_type, count in created.items():
                print(f"  {ref_type}: {count}")

        elif args.command == "prune-embeddings":
            removed = prune_embeddings(args.days)
            print(f"Removed {removed} article embeddings")

    except RelevanceEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
