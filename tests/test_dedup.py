from conftest import make_item
from dedup import filter_new


def test_known_links_and_guids_are_dropped_order_preserved():
    items = [make_item(i) for i in range(5)]
    known_links = {items[1].link}
    known_guids = {items[3].guid}

    fresh = filter_new(items, known_links, known_guids)

    assert [item.guid for item in fresh] == ["urn:post:0", "urn:post:2", "urn:post:4"]


def test_missing_guid_only_checks_link():
    no_guid = make_item(1, guid=None)
    no_link = make_item(2, link=None)

    fresh = filter_new([no_guid, no_link], known_links=set(), known_guids={None, "urn:other"})

    assert fresh == [no_guid, no_link]


def test_guid_match_is_enough_even_when_link_changed():
    moved = make_item(1, link="https://example.com/moved")

    assert filter_new([moved], known_links=set(), known_guids={"urn:post:1"}) == []


def test_repeats_within_one_batch_keep_first():
    first = make_item(1)
    same_link = make_item(2, link=first.link)
    same_guid = make_item(3, guid=first.guid)

    fresh = filter_new([first, same_link, same_guid], set(), set())

    assert fresh == [first]


def test_inputs_are_not_mutated():
    known_links = {"https://example.com/post/9"}
    known_guids = set()

    filter_new([make_item(1)], known_links, known_guids)

    assert known_links == {"https://example.com/post/9"}
    assert known_guids == set()
