# -*- coding: utf-8 -*-
"""
tests/test_entities.py
实体抽取：球队（子串、去重、按项目）、球员（正则 + 过滤）、话题（有序规则）。
用注入的小字典，不依赖 ops/teams.yml 的具体内容。
"""
from clipscout.entities import EntityExtractor, TeamInfo, extract_entities, load_teams

TEAMS = {
    "NFL": [
        TeamInfo("Kansas City Chiefs", "Kansas City", "Chiefs", "KC"),
        TeamInfo("Buffalo Bills", "Buffalo", "Bills", "BUF"),
    ],
    "NBA": [
        TeamInfo("Los Angeles Lakers", "Los Angeles", "Lakers", "LAL"),
    ],
}


def extractor():
    return EntityExtractor(TEAMS)


def test_teams_by_name_city_and_dedup():
    ex = extractor()
    text = "Chiefs beat the Bills; Kansas City Chiefs now 10-2"
    assert ex.extract_teams(text, "NFL") == ["Kansas City Chiefs", "Buffalo Bills"]


def test_teams_scoped_to_sport():
    ex = extractor()
    assert ex.extract_teams("Lakers rally late", "NFL") == []
    assert ex.extract_teams("Lakers rally late", "nba") == ["Los Angeles Lakers"]
    assert ex.extract_teams("Lakers rally late", None) == []


def test_players_filter_teams_and_common_phrases():
    ex = extractor()
    players = ex.extract_players(
        "Breaking News: Patrick Mahomes and Travis Kelce lead Kansas City past Buffalo. "
        "Patrick Mahomes threw 3 TDs. Super Bowl odds shift.",
        "NFL",
    )
    assert players == ["Patrick Mahomes", "Travis Kelce"]


def test_players_middle_initial_and_hyphen():
    ex = extractor()
    players = ex.extract_players("Odell J. Beckham spoke; Amon-Ra St was quiet; Jaxon Smith-Njigba scored", "NFL")
    assert "Odell J. Beckham" in players
    assert "Jaxon Smith-Njigba" in players


def test_topics_ordered_and_case_insensitive():
    ex = extractor()
    topics = ex.extract_topics("TRADE talks heat up as INJURY report looms; spread moves")
    assert topics == ["trade", "injury", "betting"]


def test_extract_is_deterministic():
    ex = extractor()
    a = ex.extract("Chiefs trade for receiver", "Patrick Mahomes reacts", "NFL")
    b = ex.extract("Chiefs trade for receiver", "Patrick Mahomes reacts", "NFL")
    assert a == b
    assert a.teams == ["Kansas City Chiefs"]
    assert a.players == ["Patrick Mahomes"]
    assert "trade" in a.topics


def test_empty_input():
    res = extractor().extract(None, None, "NFL")
    assert res.teams == [] and res.players == [] and res.topics == []


def test_load_teams_from_ops():
    teams = load_teams()
    assert {"NFL", "NBA", "MLB", "NHL"} <= set(teams)
    assert any(t.full_name == "Kansas City Chiefs" for t in teams["NFL"])


def test_load_teams_missing_file(tmp_path):
    assert load_teams(tmp_path / "nope.yml") == {}


def test_module_level_extract_uses_ops_dictionary():
    res = extract_entities("Eagles clinch playoff berth", None, "NFL")
    assert "Philadelphia Eagles" in res.teams
    assert "playoffs" in res.topics
