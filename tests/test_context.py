from fastapi_teams import DecisionContext


class TestDecisionContext:
    def test_remember_memoizes_per_key(self) -> None:
        context = DecisionContext()
        calls: list[int] = []

        def producer() -> bool:
            calls.append(1)
            return True

        key = DecisionContext.key(1, 2, ["posts.view"], False, None)
        assert context.remember(key, producer) is True
        assert context.remember(key, producer) is True
        assert len(calls) == 1
        assert context.hits == 1

    def test_false_decisions_are_memoized(self) -> None:
        context = DecisionContext()
        calls: list[int] = []

        def producer() -> bool:
            calls.append(1)
            return False

        context.remember("key", producer)
        context.remember("key", producer)
        assert len(calls) == 1

    def test_contexts_are_independent(self) -> None:
        first = DecisionContext()
        second = DecisionContext()
        first.remember("key", lambda: True)
        assert "key" in first
        assert "key" not in second

    def test_clear(self) -> None:
        context = DecisionContext()
        context.remember("key", lambda: True)
        context.clear()
        assert len(context) == 0
