"""厚労省ページからの Excel 取得モジュール.

取得手順:
  1. 厚労省の一覧ページ HTML を取得
  2. Excel ファイルへのリンクを抽出（「一覧」「薬局」を含むリンクを優先）
  3. Excel をバイナリでダウンロード
"""

from __future__ import annotations

import logging
from urllib.parse import unquote, urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from collector.config import MHLW_PAGE_URL, REQUEST_TIMEOUT, USER_AGENT

logger = logging.getLogger(__name__)

EXCEL_EXTENSIONS = (".xlsx", ".xlsm", ".xls")

# リンクテキストにこれらを含む Excel を優先する
_PREFERRED_LINK_WORDS = ("一覧", "薬局")


class ExcelLinkNotFoundError(Exception):
    """ページ内に Excel ファイルへのリンクが見つからない."""


def _headers() -> dict[str, str]:
    return {
        "User-Agent": USER_AGENT,
        "Accept-Language": "ja,en-US;q=0.9,en;q=0.8",
    }


def fetch_landing_page(url: str = MHLW_PAGE_URL) -> str:
    """厚労省ページの HTML を取得する.

    Raises:
        requests.RequestException: 通信失敗または 2xx 以外のステータス
    """
    logger.info("厚労省ページから Excel URL を取得中: %s", url)
    resp = requests.get(url, headers=_headers(), timeout=REQUEST_TIMEOUT)
    resp.raise_for_status()
    if resp.encoding is None or resp.encoding.lower() == "iso-8859-1":
        resp.encoding = resp.apparent_encoding
    return resp.text


def _is_excel_link(href: str) -> bool:
    path = urlparse(href).path.lower()
    return path.endswith(EXCEL_EXTENSIONS)


def find_excel_url(html: str, page_url: str = MHLW_PAGE_URL) -> str:
    """HTML から Excel ファイルの絶対 URL を抽出する.

    Raises:
        ExcelLinkNotFoundError: Excel へのリンクが 1 件もない場合
    """
    soup = BeautifulSoup(html, "html.parser")
    excel_url: str | None = None

    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not _is_excel_link(href):
            continue
        text = a.get_text(strip=True)
        if any(word in text for word in _PREFERRED_LINK_WORDS):
            excel_url = href
            break
        # 最初に見つかった Excel リンクを保持
        if excel_url is None:
            excel_url = href

    if excel_url is None:
        raise ExcelLinkNotFoundError(f"Excel ファイルへのリンクが見つかりません: {page_url}")

    if not excel_url.startswith(("http://", "https://")):
        excel_url = urljoin(page_url, excel_url)

    logger.info("Excel URL: %s", excel_url)
    return excel_url


def download_excel(url: str) -> bytes:
    """Excel ファイルをダウンロードする.

    Raises:
        requests.RequestException: 通信失敗または 2xx 以外のステータス
    """
    logger.info("Excel ファイルをダウンロード中...")
    resp = requests.get(url, headers=_headers(), timeout=REQUEST_TIMEOUT)
    resp.raise_for_status()
    logger.info("ダウンロード完了: %d bytes", len(resp.content))
    return resp.content


def file_name_from_url(url: str) -> str:
    """URL の末尾からファイル名を取り出す."""
    name = unquote(urlparse(url).path.rstrip("/").rsplit("/", 1)[-1])
    return name or "unknown.xlsx"
