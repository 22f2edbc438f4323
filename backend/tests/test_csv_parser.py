from csvchat.csv_parser import parse_csv, records_from_rows, to_csv_text


def testParseCsvSplitsRowsAndTrimsFields():
    """目的: 改行で行を分け、カンマで区切った各フィールドを trim することを確認する。"""
    assert parse_csv("a, b\r\n 1 ,2\n") == [["a", "b"], ["1", "2"]]


def testParseCsvSkipsBlankLines():
    """目的: 空行・空白のみの行は結果に含めないことを確認する。"""
    assert parse_csv("a,b\n\n1,2\n   \n3,4") == [["a", "b"], ["1", "2"], ["3", "4"]]


def testParseCsvHandlesQuotedCommasAndEscapedQuotes():
    """目的: クォート内のカンマは区切りにせず、"" は " 1文字として扱うことを確認する。"""
    rows = parse_csv('name,note\n"Smith, J","He said ""hi"""')
    assert rows[1] == ["Smith, J", 'He said "hi"']


def testParseCsvKeepsNewlinesInsideQuotes():
    """目的: クォート内の改行が値の一部として保持されることを確認する。"""
    rows = parse_csv('a,b\n"line1\nline2",x\n3,4')
    assert rows == [["a", "b"], ["line1\nline2", "x"], ["3", "4"]]


def testParseCsvUnterminatedQuoteDoesNotSwallowFollowingRows():
    """目的: 閉じていないクォートがあっても例外にせず、後続行を読み続けることを確認する。"""
    rows = parse_csv('a,b\n"oops,1\n2,3')
    assert rows == [["a", "b"], ["oops,1"], ["2", "3"]]


def testParseCsvEmptyInput():
    """目的: 空文字や None は空のリストになることを確認する。"""
    assert parse_csv("") == []
    assert parse_csv(None) == []


def testRecordsFromRowsDropsRowsWithWrongArity():
    """目的: ヘッダと列数が一致しない行を捨て、その件数を返すことを確認する。"""
    headers, rows, dropped = records_from_rows(parse_csv("Region,Amount\nN,10\nS\nE,1,2\nW,4"))

    assert headers == ["Region", "Amount"]
    assert rows == [{"Region": "N", "Amount": "10"}, {"Region": "W", "Amount": "4"}]
    assert dropped == 2


def testRecordsFromRowsWithoutInput():
    """目的: 入力が空なら空のデータセットになることを確認する。"""
    assert records_from_rows([]) == ([], [], 0)


def testToCsvTextReadsBackToSameDataset():
    """目的: 直列化したCSVを読み戻すと、カンマ・クォート・改行を含む値も元と一致することを確認する。"""
    headers = ["name", "note"]
    rows = [
        {"name": "Smith, J", "note": 'said "hi"'},
        {"name": "multi", "note": "two\nlines"},
        {"name": "plain", "note": ""},
    ]

    readBack = records_from_rows(parse_csv(to_csv_text(headers, rows)))

    assert readBack == (headers, rows, 0)
