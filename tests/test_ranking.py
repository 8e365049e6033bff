# tests/test_ranking.py

import itertools

import pytest

from cmstats.errors import RankingError
from cmstats.ranking import rebuild_rankings
from tests.helpers import add_dungeons, add_player, add_realm, add_run, create_test_db

TS = 1700000000000


@pytest.fixture
def db(tmp_path):
    database = create_test_db(str(tmp_path))
    yield database
    database.close()


def rankings(db, rtype, scope, season=5, dungeon=1):
    return [
        (r["duration"], r["ranking"], r["percentile_bracket"])
        for r in db.query(
            """
            SELECT cr.duration, rr.ranking, rr.percentile_bracket
            FROM run_rankings rr JOIN challenge_runs cr ON cr.id = rr.run_id
            WHERE rr.ranking_type = ? AND rr.ranking_scope = ? AND rr.season_id = ? AND rr.dungeon_id = ?
            ORDER BY rr.ranking
            """,
            (rtype, scope, season, dungeon),
        )
    ]


def profile(db, player_id, season=5):
    return db.query_one("SELECT * FROM player_profiles WHERE player_id = ? AND season_id = ?", (player_id, season))


class TestRunRankings:
    def test_team_signature_collapse(self, db):
        realm = add_realm(db, "us", "pagle")
        add_dungeons(db, 1)
        add_run(db, 1, realm, 300000, TS, [1, 2, 3, 4, 5], season=5)
        add_run(db, 1, realm, 310000, TS + 1, [1, 2, 3, 4, 5], season=5)
        rebuild_rankings(db, vacuum=False)

        assert [(d, r) for d, r, _ in rankings(db, "global", "all")] == [(300000, 1), (310000, 2)]
        assert [(d, r) for d, r, _ in rankings(db, "global", "filtered")] == [(300000, 1)]
        assert [(d, r) for d, r, _ in rankings(db, "regional", "us_filtered")] == [(300000, 1)]
        assert [(d, r) for d, r, _ in rankings(db, "realm", "pagle")] == [(300000, 1), (310000, 2)]

    def test_regional_partitions(self, db):
        us = add_realm(db, "us", "pagle")
        eu = add_realm(db, "eu", "everlook")
        add_dungeons(db, 1)
        add_run(db, 1, us, 300000, TS, [1], season=5)
        add_run(db, 1, eu, 290000, TS, [2], season=5)
        rebuild_rankings(db, vacuum=False)

        assert [d for d, _, _ in rankings(db, "global", "all")] == [290000, 300000]
        assert [(d, r) for d, r, _ in rankings(db, "regional", "us")] == [(300000, 1)]
        assert [(d, r) for d, r, _ in rankings(db, "regional", "eu")] == [(290000, 1)]

    def test_same_pool_slug_in_two_regions(self, db):
        us = add_realm(db, "us", "everlook")
        eu = add_realm(db, "eu", "everlook")
        add_dungeons(db, 1)
        add_run(db, 1, us, 300000, TS, [1], season=5)
        add_run(db, 1, eu, 290000, TS, [2], season=5)
        rebuild_rankings(db, vacuum=False)

        rows = rankings(db, "realm", "everlook")
        assert sorted(r for _, r, _ in rows) == [1, 1]
        assert all(b == "artifact" for _, _, b in rows)

    def test_pool_combines_child_realms(self, db):
        pagle = add_realm(db, "us", "pagle")
        nazgrim = add_realm(db, "us", "nazgrim", parent="pagle")
        add_dungeons(db, 1)
        add_run(db, 1, pagle, 300000, TS, [1], season=5)
        add_run(db, 1, nazgrim, 290000, TS, [2], season=5)
        rebuild_rankings(db, vacuum=False)

        assert [(d, r) for d, r, _ in rankings(db, "realm", "pagle_filtered")] == [(290000, 1), (300000, 2)]
        assert rankings(db, "realm", "nazgrim") == []

    def test_seasons_rank_separately(self, db):
        realm = add_realm(db, "us", "pagle")
        add_dungeons(db, 1)
        add_run(db, 1, realm, 300000, TS, [1], season=4)
        add_run(db, 1, realm, 290000, TS + 1, [2], season=5)
        add_run(db, 1, realm, 280000, TS + 2, [3], season=None)
        rebuild_rankings(db, vacuum=False)

        assert [(d, r) for d, r, _ in rankings(db, "global", "all", season=4)] == [(300000, 1)]
        assert [(d, r) for d, r, _ in rankings(db, "global", "all", season=5)] == [(290000, 1)]
        assert db.scalar("SELECT COUNT(*) FROM run_rankings WHERE season_id IS NULL") == 0

    def test_ties_broken_by_completion_time(self, db):
        realm = add_realm(db, "us", "pagle")
        add_dungeons(db, 1)
        late = add_run(db, 1, realm, 300000, TS + 10, [1], season=5)
        early = add_run(db, 1, realm, 300000, TS, [2], season=5)
        rebuild_rankings(db, vacuum=False)

        ranks = dict(db.query(
            "SELECT run_id, ranking FROM run_rankings WHERE ranking_type = 'global' AND ranking_scope = 'all'"
        ))
        assert ranks == {early: 1, late: 2}
        # both share the partition minimum
        brackets = {r[0] for r in db.query("SELECT percentile_bracket FROM run_rankings")}
        assert brackets == {"artifact"}

    def test_filtered_has_one_row_per_team(self, db):
        realm = add_realm(db, "us", "pagle")
        add_dungeons(db, 1)
        for i, team in enumerate([[1, 2], [2, 1], [3, 4], [1, 2], [3, 4], [5, 6]]):
            add_run(db, 1, realm, 300000 + i * 1000, TS + i, team, season=5)
        rebuild_rankings(db, vacuum=False)

        dupes = db.query(
            """
            SELECT rr.ranking_type, rr.ranking_scope, cr.team_signature, COUNT(*)
            FROM run_rankings rr JOIN challenge_runs cr ON cr.id = rr.run_id
            WHERE rr.ranking_scope LIKE '%filtered'
            GROUP BY rr.ranking_type, rr.ranking_scope, rr.dungeon_id, rr.season_id, cr.team_signature
            HAVING COUNT(*) > 1
            """
        )
        assert dupes == []
        assert [(d, r) for d, r, _ in rankings(db, "global", "filtered")] == [
            (300000, 1), (302000, 2), (305000, 3),
        ]


class TestBrackets:
    @pytest.fixture
    def hundred(self, db):
        realm = add_realm(db, "us", "pagle")
        add_dungeons(db, 1)
        for i in range(100):
            add_run(db, 1, realm, 300000 + i * 100, TS + i, [1000 + i], season=5)
        rebuild_rankings(db, vacuum=False)
        return {rank: bracket for _, rank, bracket in rankings(db, "global", "all")}

    def test_partition_of_one_hundred(self, hundred):
        assert len(hundred) == 100
        assert hundred[1] == "artifact"
        assert hundred[2] == "legendary"
        assert hundred[5] == "legendary"
        assert hundred[6] == "epic"
        assert hundred[20] == "epic"
        assert hundred[21] == "rare"
        assert hundred[40] == "rare"
        assert hundred[41] == "uncommon"
        assert hundred[60] == "uncommon"
        assert hundred[61] == "common"
        assert hundred[100] == "common"

    def test_best_runs_carry_brackets(self, db, hundred):
        row = db.query_one("SELECT * FROM player_best_runs WHERE player_id = 1005")
        assert row["global_ranking_filtered"] == 6
        assert row["global_percentile_bracket"] == "epic"
        assert row["regional_ranking_filtered"] == 6
        assert row["realm_ranking_filtered"] == 6


class TestPermutationInvariance:
    RUNS = [
        (300000, TS + 3, [1, 2]),
        (300000, TS + 1, [3, 4]),
        (295000, TS + 2, [5, 6]),
        (310000, TS + 4, [1, 2]),
        (305000, TS + 5, [7, 8]),
    ]

    def ranks_for(self, tmp_path, order, label):
        db = create_test_db(str(tmp_path / label))
        try:
            realm = add_realm(db, "us", "pagle")
            add_dungeons(db, 1)
            for duration, ts, team in order:
                add_run(db, 1, realm, duration, ts, team, season=5)
            rebuild_rankings(db, vacuum=False)
            return sorted(
                (r["ranking_type"], r["ranking_scope"], r["duration"], r["completed_timestamp"], r["ranking"],
                 r["percentile_bracket"])
                for r in db.query(
                    """
                    SELECT rr.*, cr.duration, cr.completed_timestamp
                    FROM run_rankings rr JOIN challenge_runs cr ON cr.id = rr.run_id
                    """
                )
            )
        finally:
            db.close()

    def test_insertion_order_does_not_matter(self, tmp_path):
        results = []
        for i, order in enumerate(itertools.islice(itertools.permutations(self.RUNS), 0, 120, 29)):
            (tmp_path / str(i)).mkdir()
            results.append(self.ranks_for(tmp_path, list(order), str(i)))
        assert len(results) > 1
        assert all(r == results[0] for r in results)


class TestPlayerAggregates:
    @pytest.fixture
    def seeded(self, db):
        pagle = add_realm(db, "us", "pagle")
        nazgrim = add_realm(db, "us", "nazgrim", parent="pagle")
        atiesh = add_realm(db, "us", "atiesh")
        add_dungeons(db, 2)
        add_player(db, 1, pagle, "Alpha")
        add_player(db, 2, nazgrim, "Bravo")
        add_player(db, 3, atiesh, "Charlie")
        add_player(db, 4, atiesh, "Delta")
        # Alpha: both dungeons, 600000 combined, mostly Arms
        add_run(db, 1, pagle, 300000, TS, [(1, 71)], season=5)
        add_run(db, 1, pagle, 320000, TS + 1, [(1, 72)], season=5)
        add_run(db, 2, pagle, 300000, TS + 2, [(1, 71)], season=5)
        # Bravo: both dungeons, 590000 combined
        add_run(db, 1, nazgrim, 290000, TS + 3, [(2, 71)], season=5)
        add_run(db, 2, nazgrim, 300000, TS + 4, [(2, 71)], season=5)
        # Charlie: one dungeon only
        add_run(db, 1, atiesh, 250000, TS + 5, [(3, 62)], season=5)
        # Delta: both dungeons, mage
        add_run(db, 1, atiesh, 305000, TS + 6, [(4, 62)], season=5)
        add_run(db, 2, atiesh, 305000, TS + 7, [(4, 62)], season=5)
        return rebuild_rankings(db, vacuum=False)

    def test_stats(self, seeded):
        assert seeded.profiles == 4
        assert seeded.ranked_players == 3
        assert seeded.best_runs == 7

    def test_best_run_per_dungeon(self, db, seeded):
        row = db.query_one("SELECT * FROM player_best_runs WHERE player_id = 1 AND dungeon_id = 1")
        assert row["duration"] == 300000
        alpha = profile(db, 1)
        assert alpha["total_runs"] == 3
        assert alpha["dungeons_completed"] == 2
        assert alpha["combined_best_time"] == 600000
        assert alpha["average_best_time"] == 300000

    def test_main_spec_and_class(self, db, seeded):
        alpha = profile(db, 1)
        assert alpha["main_spec_id"] == 71
        assert alpha["class_name"] == "Warrior"
        assert profile(db, 4)["class_name"] == "Mage"

    def test_coverage_gates_ranking(self, db, seeded):
        charlie = profile(db, 3)
        assert charlie["has_complete_coverage"] == 0
        assert charlie["global_ranking"] is None
        assert charlie["global_ranking_bracket"] is None

    def test_global_regional_and_pool_ranks(self, db, seeded):
        alpha, bravo, delta = profile(db, 1), profile(db, 2), profile(db, 4)
        assert (bravo["global_ranking"], alpha["global_ranking"], delta["global_ranking"]) == (1, 2, 3)
        assert (bravo["regional_ranking"], alpha["regional_ranking"]) == (1, 2)
        # pagle + nazgrim share one pool, atiesh is alone
        assert (bravo["realm_ranking"], alpha["realm_ranking"], delta["realm_ranking"]) == (1, 2, 1)
        assert bravo["global_ranking_bracket"] == "artifact"
        assert delta["realm_ranking_bracket"] == "artifact"

    def test_class_ranks(self, db, seeded):
        alpha, bravo, delta = profile(db, 1), profile(db, 2), profile(db, 4)
        assert (bravo["global_class_rank"], alpha["global_class_rank"]) == (1, 2)
        assert delta["global_class_rank"] == 1
        assert delta["global_class_bracket"] == "artifact"
        assert alpha["realm_class_rank"] == 2

    def test_legacy_player_rankings(self, db, seeded):
        rows = db.query("SELECT * FROM player_rankings WHERE player_id = 1 ORDER BY ranking_type")
        assert [(r["ranking_type"], r["ranking_scope"], r["ranking"]) for r in rows] == [
            ("global", "global", 2), ("realm", "pagle", 2), ("regional", "us", 2),
        ]

    def test_name_breaks_ties(self, db):
        realm = add_realm(db, "us", "pagle")
        add_dungeons(db, 1)
        add_player(db, 1, realm, "Zed")
        add_player(db, 2, realm, "Amy")
        add_run(db, 1, realm, 300000, TS, [(1, 71)], season=5)
        add_run(db, 1, realm, 300000, TS + 1, [(2, 71)], season=5)
        rebuild_rankings(db, vacuum=False)
        assert profile(db, 2)["global_ranking"] == 1
        assert profile(db, 1)["global_ranking"] == 2

    def test_invalid_players_excluded(self, db):
        realm = add_realm(db, "us", "pagle")
        add_dungeons(db, 1)
        add_player(db, 1, realm, "Gone", valid=0)
        add_run(db, 1, realm, 300000, TS, [(1, 71), (2, 71)], season=5)
        stats = rebuild_rankings(db, vacuum=False)
        assert stats.profiles == 1
        assert profile(db, 1) is None
        assert profile(db, 2)["global_ranking"] == 1


class TestRebuild:
    def test_empty_database(self, db):
        with pytest.raises(RankingError):
            rebuild_rankings(db)

    def test_rebuild_is_idempotent(self, db):
        realm = add_realm(db, "us", "pagle")
        add_dungeons(db, 2)
        for i in range(6):
            add_run(db, 1 + i % 2, realm, 300000 + i * 777, TS + i, [(i % 3 + 1, 71), (10 + i, 62)], season=5)

        def snapshot():
            return {
                table: [tuple(r) for r in db.query(f"SELECT * FROM {table} ORDER BY 1, 2, 3, 4")]
                for table in ("run_rankings", "player_best_runs", "player_profiles", "player_rankings")
            }

        rebuild_rankings(db)
        first = snapshot()
        rebuild_rankings(db)
        assert snapshot() == first
        assert first["run_rankings"]
        assert {r[-1] for r in first["run_rankings"]} == {TS + 5}

    def test_explicit_computed_at(self, db):
        realm = add_realm(db, "us", "pagle")
        add_dungeons(db, 1)
        add_run(db, 1, realm, 300000, TS, [(1, 71)], season=5)
        rebuild_rankings(db, computed_at=42, vacuum=False)
        assert db.scalar("SELECT DISTINCT computed_at FROM run_rankings") == 42
        assert profile(db, 1)["last_updated"] == 42
