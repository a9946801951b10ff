from fastapi_teams.matching import candidate_codes, candidates_for_all, is_wildcard, matches


class TestCandidateCodes:
    def test_three_segments(self) -> None:
        assert candidate_codes("posts.comments.edit") == ["posts.*", "posts.comments.*", "posts.comments.edit"]

    def test_single_segment_is_only_itself(self) -> None:
        assert candidate_codes("posts") == ["posts"]

    def test_wildcard_nodes_come_first(self) -> None:
        codes = candidate_codes("posts.view", ["*", "*.*", "all"])
        assert codes == ["*", "*.*", "all", "posts.*", "posts.view"]

    def test_candidates_are_deduplicated(self) -> None:
        assert candidates_for_all(["posts.view", "posts.edit"]) == ["posts.*", "posts.view", "posts.edit"]


class TestMatches:
    def test_exact_match(self) -> None:
        assert matches({"posts.view"}, "posts.view") is True

    def test_no_match_different_permission(self) -> None:
        assert matches({"posts.view"}, "posts.delete") is False

    def test_wildcard_matches_children(self) -> None:
        assert matches({"posts.*"}, "posts.delete") is True
        assert matches({"posts.*"}, "posts.comments.edit") is True

    def test_nested_wildcard(self) -> None:
        assert matches({"posts.comments.*"}, "posts.comments.edit") is True
        assert matches({"posts.comments.*"}, "posts.edit") is False

    def test_wildcard_does_not_match_different_prefix(self) -> None:
        assert matches({"posts.*"}, "users.view") is False

    def test_bare_prefix_does_not_match_longer_code(self) -> None:
        assert matches({"posts"}, "posts.view") is False

    def test_longer_code_does_not_match_shorter(self) -> None:
        assert matches({"posts.view.all"}, "posts.view") is False

    def test_intersection_against_candidates(self) -> None:
        held = {"a.*", "x.y"}
        assert matches(held, "a.b.c") is True
        assert matches({"a.b.*"}, "a.b.c") is True
        assert matches({"a.b"}, "a.b.c") is False

    def test_empty_held_set_never_matches(self) -> None:
        assert matches(set(), "posts.view") is False

    def test_super_admin_tokens_only_when_enabled(self) -> None:
        assert matches({"all"}, "posts.view") is False
        assert matches({"all"}, "posts.view", ["*", "*.*", "all"]) is True
        assert matches({"*"}, "anything.at.all", ["*"]) is True


class TestIsWildcard:
    def test_detects_wildcard_segment(self) -> None:
        assert is_wildcard("posts.*") is True
        assert is_wildcard("*") is True

    def test_plain_code(self) -> None:
        assert is_wildcard("posts.view") is False
