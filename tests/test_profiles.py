# tests/test_profiles.py

import asyncio

import pytest

from cmstats.config import Config
from cmstats.profiles import (
    ProfileFetcher,
    details_from_payload,
    enchant_signature,
    insert_player_profile_data,
    store_equipment,
)
from cmstats.ranking import rebuild_rankings
from tests.helpers import FakeClient, add_dungeons, add_player, add_realm, add_run, create_test_db

SUMMARY = {
    "id": 9001,
    "name": "Alpha",
    "realm": {"slug": "pagle"},
    "gender": {"type": "FEMALE"},
    "race": {"id": 1, "name": "Human"},
    "character_class": {"id": 1, "name": "Warrior"},
    "active_spec": {"id": 71, "name": "Arms"},
    "guild": {"name": "Cartel"},
    "level": 90,
    "average_item_level": 496,
    "equipped_item_level": 495,
    "last_login_timestamp": 1700000000000,
}
MEDIA = {"assets": [{"key": "inset", "value": "inset.jpg"}, {"key": "avatar", "value": "avatar.jpg"}]}


def equipment(item_id=500, enchant_id=4209, name="Helm"):
    return {
        "equipped_items": [
            {
                "slot": {"type": "HEAD"},
                "item": {"id": item_id},
                "quality": {"type": "EPIC"},
                "name": name,
                "enchantments": [
                    {
                        "enchantment_id": enchant_id,
                        "display_string": "+60 Intellect",
                        "enchantment_slot": {"id": 0, "type": "PERMANENT"},
                    }
                ],
            },
            {"slot": {"type": "FEET"}, "item": {"id": 600}, "quality": {"type": "RARE"}, "name": "Boots"},
        ]
    }


@pytest.fixture
def db(tmp_path):
    database = create_test_db(str(tmp_path))
    yield database
    database.close()


@pytest.fixture
def ranked(db):
    add_realm(db, "us", "pagle")
    nazgrim = add_realm(db, "us", "nazgrim", parent="pagle")
    add_dungeons(db, 1)
    add_player(db, 1, nazgrim, "Alpha")
    add_player(db, 2, nazgrim, "Ghost")
    add_run(db, 1, nazgrim, 300000, 1700000000000, [(1, 71)], season=5)
    add_run(db, 1, nazgrim, 310000, 1700000000001, [(2, 71)], season=5)
    rebuild_rankings(db, vacuum=False)
    return db


def run_fetcher(db, client, **config):
    fetcher = ProfileFetcher(db, client, Config(**config))
    return asyncio.run(fetcher.run())


class TestEquipmentSnapshots:
    def write(self, db, payload, ts):
        return db.run_in_transaction(lambda conn: store_equipment(conn, 1, payload, ts))

    def test_unchanged_slots_not_duplicated(self, db):
        assert self.write(db, equipment(), 1) == 2
        assert self.write(db, equipment(), 2) == 0
        assert db.scalar("SELECT COUNT(*) FROM player_equipment") == 2
        assert db.scalar("SELECT COUNT(*) FROM player_equipment_enchantments") == 1

    def test_changed_enchant_appends_slot(self, db):
        self.write(db, equipment(), 1)
        assert self.write(db, equipment(enchant_id=4210), 2) == 1
        latest = db.query_one(
            "SELECT id FROM player_equipment WHERE slot_type = 'HEAD' ORDER BY snapshot_timestamp DESC LIMIT 1"
        )
        enchant = db.scalar("SELECT enchantment_id FROM player_equipment_enchantments WHERE equipment_id = ?",
                            (latest["id"],))
        assert enchant == 4210

    def test_changed_item_appends_slot(self, db):
        self.write(db, equipment(), 1)
        assert self.write(db, equipment(item_id=501, name="Better Helm"), 2) == 1
        assert db.scalar("SELECT COUNT(*) FROM player_equipment WHERE slot_type = 'HEAD'") == 2
        assert db.scalar("SELECT COUNT(*) FROM player_equipment WHERE slot_type = 'FEET'") == 1

    def test_enchant_signature_order_independent(self):
        a = [{"enchantment_id": 1, "slot_id": 0}, {"enchantment_id": 2, "slot_id": 1}]
        assert enchant_signature(a) == enchant_signature(list(reversed(a)))
        assert enchant_signature([{"enchantment_id": None}]) == enchant_signature([{}])


class TestDetails:
    def test_details_from_payload(self):
        details = details_from_payload(SUMMARY, MEDIA)
        assert details["class_name"] == "Warrior"
        assert details["active_spec_name"] == "Arms"
        assert details["guild_name"] == "Cartel"
        assert details["gender"] == "FEMALE"
        assert details["avatar_url"] == "avatar.jpg"

    def test_missing_media(self):
        assert details_from_payload({"name": "x"}, None)["avatar_url"] is None

    def test_upsert_keeps_one_row(self, db):
        realm = add_realm(db, "us", "pagle")
        add_player(db, 1, realm, "Alpha")
        insert_player_profile_data(db, 1, SUMMARY, equipment(), MEDIA)
        changed = dict(SUMMARY, guild={"name": "Other"})
        insert_player_profile_data(db, 1, changed, equipment(), MEDIA)
        rows = db.query("SELECT guild_name FROM player_details WHERE player_id = 1")
        assert [r[0] for r in rows] == ["Other"]
        assert db.scalar("SELECT COUNT(*) FROM player_equipment") == 2


class TestProfileFetcher:
    def test_falls_back_to_pool_leader(self, ranked):
        client = FakeClient(
            summaries={("alpha", "pagle"): SUMMARY},
            equipment={("alpha", "pagle"): equipment()},
            media={("alpha", "pagle"): MEDIA},
        )
        stats = run_fetcher(ranked, client)

        assert stats.updated == 1
        assert stats.not_found == 1
        assert ("summary", "alpha", "nazgrim") in client.calls
        assert ("summary", "alpha", "pagle") in client.calls
        details = ranked.query_one("SELECT * FROM player_details WHERE player_id = 1")
        assert details["race_name"] == "Human"
        assert details["average_item_level"] == 496
        player = ranked.query_one(
            "SELECT p.blizzard_character_id, r.slug FROM players p JOIN realms r ON r.id = p.realm_id WHERE p.id = 1"
        )
        assert player["slug"] == "pagle"
        assert player["blizzard_character_id"] == 9001
        assert stats.equipment_rows == 2

    def test_missing_everywhere_marks_invalid(self, ranked):
        run_fetcher(ranked, FakeClient())
        assert ranked.scalar("SELECT COUNT(*) FROM players WHERE is_valid = 0") == 2

    def test_fresh_details_not_refetched(self, ranked):
        client = FakeClient(summaries={"alpha": SUMMARY, "ghost": dict(SUMMARY, name="Ghost", id=9002)})
        first = run_fetcher(ranked, client)
        assert first.updated == 2
        second = run_fetcher(ranked, FakeClient())
        assert second.processed == 0

    def test_optional_endpoints_may_fail(self, ranked):
        client = FakeClient(summaries={"alpha": SUMMARY, "ghost": dict(SUMMARY, name="Ghost", id=9002)})
        stats = run_fetcher(ranked, client)
        assert stats.updated == 2
        assert stats.equipment_rows == 0
        assert ranked.scalar("SELECT avatar_url FROM player_details WHERE player_id = 1") is None
