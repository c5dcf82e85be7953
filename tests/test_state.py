import pytest

from brewops.core.models import Package
from brewops.core.state import AppState


def test_merge_notifies_listeners_with_new_snapshot():
    state = AppState()
    seen = []
    remove = state.add_listener(seen.append)

    snapshot = state.merge({"installed_casks": [Package("firefox", "130.0", True)]})

    assert seen == [snapshot]
    assert snapshot.installed_casks == [Package("firefox", "130.0", True)]
    remove()
    state.merge({"pinned_packages": ["node"]})
    assert len(seen) == 1


def test_merge_rejects_unknown_fields():
    with pytest.raises(ValueError):
        AppState().merge({"taps": []})


def test_installed_packages_are_sorted_case_insensitively():
    state = AppState()
    state.merge({
        "installed_formulae": [Package("wget", "1"), Package("Bash", "5")],
        "installed_casks": [Package("alfred", "5", True)],
    })
    assert [p.name for p in state.snapshot.installed_packages] == ["alfred", "Bash", "wget"]


def test_failing_listener_does_not_block_others():
    state = AppState()
    seen = []

    def broken(snapshot):
        raise RuntimeError("boom")

    state.add_listener(broken)
    state.add_listener(seen.append)
    state.merge({"pinned_packages": []})
    assert len(seen) == 1
