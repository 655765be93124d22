import datetime
import tomllib
from pathlib import Path

from hypothesis import given
from hypothesis import strategies as st

from git_autosync.config import Config, RepositoryConfig, parse_time
from git_autosync.daemon import EventInbox, EventKind
from git_autosync.sync import format_commit_message

# Any text except lone surrogates, which cannot be encoded as UTF-8. Control
# characters, DEL included, must survive through escapes.
safe_text = st.text(alphabet=st.characters(blacklist_categories=("Cs",)), max_size=40)

path_segment = st.text(
    alphabet="abcdefghijklmnopqrstuvwxyz0123456789_-", min_size=1, max_size=12
)
abs_paths = st.lists(path_segment, min_size=1, max_size=4).map(
    lambda parts: Path("/" + "/".join(parts))
)

repositories = st.lists(
    st.builds(
        RepositoryConfig,
        path=abs_paths,
        enabled=st.booleans(),
        commit_message_template=safe_text,
    ),
    max_size=5,
    unique_by=lambda r: r.path,
)


@given(template=st.text().filter(lambda s: "{" not in s), now=st.datetimes())
def test_template_without_placeholders_is_unchanged(
    template: str, now: datetime.datetime
) -> None:
    """
    Property: Text with no braces passes through formatting untouched.
    """
    assert format_commit_message(template, now) == template


@given(now=st.datetimes())
def test_placeholders_agree_within_one_message(now: datetime.datetime) -> None:
    """
    Property: {date} and {time} come from the same instant as {timestamp}.
    """
    assert format_commit_message("{date} {time}", now) == format_commit_message(
        "{timestamp}", now
    )


@given(
    interval=st.integers(min_value=1, max_value=10**6),
    enable_tray=st.booleans(),
    repos=repositories,
)
def test_config_survives_toml_round_trip(
    interval: int, enable_tray: bool, repos: list[RepositoryConfig]
) -> None:
    """
    Property: Serializing a Config and parsing it back yields an equal value,
    including repository order and arbitrary template text.
    """
    original = Config(
        check_interval=interval, enable_tray=enable_tray, repositories=tuple(repos)
    )

    parsed = Config.from_dict(tomllib.loads(original.to_toml()))

    assert parsed == original


@given(kinds=st.lists(st.sampled_from(list(EventKind)), max_size=30))
def test_inbox_orders_by_kind_then_post_order(kinds: list[EventKind]) -> None:
    """
    Property: Whatever the interleaving of producers, the inbox yields events
    sorted by kind priority, and events of one kind in the order they were posted.
    """
    inbox = EventInbox()
    for i, kind in enumerate(kinds):
        inbox.post(kind, i)

    drained = []
    while (event := inbox.next_event(timeout=0)) is not None:
        drained.append((event.kind, event.payload))

    assert drained == sorted(
        ((kind, i) for i, kind in enumerate(kinds)), key=lambda e: (int(e[0]), e[1])
    )


@given(n=st.integers(min_value=0, max_value=10**6))
def test_parse_time_units_scale(n: int) -> None:
    """
    Property: Bare integers pass through and unit suffixes scale exactly.
    """
    assert parse_time(n) == n
    assert parse_time(str(n)) == n
    assert parse_time(f"{n}s") == n
    assert parse_time(f"{n}m") == n * 60
    assert parse_time(f"{n}h") == n * 3600
