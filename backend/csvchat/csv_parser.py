"""
CSVテキストのパース

ブラウザ側の簡易パーサと同じ規則で動く（左から1文字ずつ走査、inQuotes フラグ、"" エスケープ）。
ヘッダの扱いは知らない。ヘッダ名のサニタイズは table_store 側の責務。
"""


def _scan_row(text: str, start: int, *, multiline: bool) -> tuple[list[str], int, bool]:
    """
    start から1行分を走査し (fields, 次の開始位置, クォートが閉じたか) を返す。

    multiline=True の場合、クォート内の改行はフィールドの一部として扱う。
    """
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False
    i = start
    n = len(text)

    while i < n:
        char = text[i]
        if char == '"':
            if in_quotes and i + 1 < n and text[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        elif char == "\n" and (not in_quotes or not multiline):
            fields.append("".join(current).strip())
            return fields, i + 1, not in_quotes
        else:
            current.append(char)
        i += 1

    fields.append("".join(current).strip())
    return fields, n, not in_quotes


def parse_csv(text: str) -> list[list[str]]:
    """
    目的: CSVテキストを「行ごとのフィールド列」に分解する。

    - 改行（\\n / \\r\\n）で行を分け、空白のみの行は捨てる
    - クォート外のカンマでフィールドを区切り、各フィールドは trim する
    - クォート内の "" は " 1文字、クォート内の改行は値の一部として扱う
    - 閉じていないクォートはエラーにしない。その行だけ改行で打ち切って読み直す
    """
    text = text or ""
    result: list[list[str]] = []
    pos = 0

    while pos < len(text):
        start = pos
        fields, pos, balanced = _scan_row(text, start, multiline=True)
        if not balanced:
            # 末尾までクォートが閉じなかった: 後続行を飲み込まないよう1行単位で読み直す
            fields, pos, _ = _scan_row(text, start, multiline=False)

        if not text[start:pos].strip():
            continue
        result.append(fields)

    return result


def records_from_rows(parsed: list[list[str]]) -> tuple[list[str], list[dict], int]:
    """
    目的: parse_csv の結果を (headers, rows, dropped) に変換する。

    先頭行をヘッダとし、列数がヘッダと一致しない行は捨てて件数を返す。
    """
    if not parsed:
        return [], [], 0

    headers = [h.replace('"', "").strip() for h in parsed[0]]
    records: list[dict] = []
    dropped = 0
    for row in parsed[1:]:
        if len(row) != len(headers):
            dropped += 1
            continue
        records.append({h: row[i] for i, h in enumerate(headers)})

    return headers, records, dropped


def to_csv_text(headers: list[str], rows: list[dict]) -> str:
    """目的: Dataset を parse_csv で読み戻せるCSVテキストへ直列化する。"""

    def quote(value) -> str:
        s = "" if value is None else str(value)
        if any(c in s for c in (",", '"', "\n")):
            return '"' + s.replace('"', '""') + '"'
        return s

    lines = [",".join(quote(h) for h in headers)]
    for row in rows:
        lines.append(",".join(quote(row.get(h)) for h in headers))
    return "\n".join(lines)
