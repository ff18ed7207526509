import pytest

from ratewatch.scraper.extract import extract_rate, parse_percentage, rate_from_content


class FakeElement:
    def __init__(self, text):
        self.text = text

    async def text_content(self):
        return self.text


class FakePage:
    def __init__(self, selectors=None, html=""):
        self.selectors = selectors or {}
        self.html = html

    async def query_selector_all(self, selector):
        return [FakeElement(text) for text in self.selectors.get(selector, [])]

    async def content(self):
        return self.html


def test_parse_percentage():
    assert parse_percentage("料率 4.5 %") == 4.5
    assert parse_percentage("10%") == 10.0
    assert parse_percentage("no rate") is None
    assert parse_percentage(None) is None


def test_rate_from_content_phrasings():
    assert rate_from_content("<div>料率・報酬 <span>3.0%</span></div>") == 3.0
    assert rate_from_content('<script>var r = "8 %"</script>') == 8.0
    assert rate_from_content("<p>nothing</p>") is None


@pytest.mark.asyncio
async def test_selector_order_wins():
    page = FakePage(
        selectors={
            ".raf-head__contentData": ["shop name", "4%"],
            '[data-test="rate"]': ["9%"],
        },
        html="料率・報酬 1%",
    )
    assert await extract_rate(page) == 4.0


@pytest.mark.asyncio
async def test_falls_back_to_content():
    page = FakePage(selectors={".raf-product__rankBox": ["rank 3"]}, html="<b>料率:報酬 2.5%</b>")
    assert await extract_rate(page) == 2.5


@pytest.mark.asyncio
async def test_no_rate_anywhere():
    assert await extract_rate(FakePage(html="<html></html>")) is None
