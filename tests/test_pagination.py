"""
tests/test_pagination.py
"""
import pytest

from forumshelf.bookmarks import page_window


@pytest.mark.parametrize("total", [0, 1, 9, 10, 11, 25, 30, 101])
def test_pages_cover_every_post_once(total):
    posts = list(range(total))
    w = page_window(total, 1, 10)
    seen = []
    for page in w["pages"]:
        win = page_window(total, page, 10)
        chunk = posts[win["offset"] : win["end"]]
        assert len(chunk) <= 10
        seen.extend(chunk)
    assert seen == posts


def test_twenty_five_posts_page_three():
    w = page_window(25, 3, 10)
    assert (w["offset"], w["end"]) == (20, 25)
    assert w["total_pages"] == 3
    assert w["pages"] == [1, 2, 3]
    assert w["prev"] == 2
    assert w["next"] is None


def test_first_page_has_no_prev():
    w = page_window(25, 1, 10)
    assert w["prev"] is None
    assert w["next"] == 2


def test_page_past_the_end_is_empty():
    w = page_window(5, 4, 10)
    assert w["offset"] >= w["end"]
    assert w["total_pages"] == 1


def test_no_posts_no_pages():
    w = page_window(0, 1, 10)
    assert w["total_pages"] == 0
    assert w["pages"] == []
