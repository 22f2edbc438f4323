from decimal import Decimal

from csvchat.charts import normalize_chart_data


def testAxesResolveToActualColumnNames():
    """目的: LLMが指定した軸名を大文字小文字を無視して実際の列名に合わせることを確認する。"""
    rows = [{"Region": "N", "total": 10}, {"Region": "S", "total": 5}]

    chart = normalize_chart_data(rows, {"type": "bar", "title": "Totals", "xAxis": "region", "yAxis": "TOTAL"})

    assert chart["config"] == {"type": "bar", "title": "Totals", "xAxis": "Region", "yAxis": "total"}
    assert chart["data"] == rows


def testUnknownAxisIsKeptAsIs():
    """目的: 結果に無い軸名は書き換えずに残すことを確認する。"""
    rows = [{"a": 1}, {"a": 2}]

    chart = normalize_chart_data(rows, {"type": "line", "xAxis": "missing", "yAxis": "a"})

    assert chart["config"]["xAxis"] == "missing"


def testDataIsTruncatedToMaxRows():
    """目的: グラフ用データが先頭 max_rows 行に切り詰められることを確認する。"""
    rows = [{"x": str(i), "y": i} for i in range(60)]

    assert len(normalize_chart_data(rows, {"type": "bar", "xAxis": "x", "yAxis": "y"})["data"]) == 50
    assert len(normalize_chart_data(rows, {"type": "bar"}, max_rows=10)["data"]) == 10


def testPieChartPicksCategoryAndValueColumns():
    """目的: pie で軸が未指定なら、文字列列をカテゴリ・数値列を値にすることを確認する。"""
    rows = [{"n": Decimal("3"), "label": "a"}, {"n": Decimal("4"), "label": "b"}]

    chart = normalize_chart_data(rows, {"type": "pie"})

    assert chart["config"]["xAxis"] == "label"
    assert chart["config"]["yAxis"] == "n"


def testNoChartWithoutRowsOrConfig():
    """目的: 行が無い、または設定が無い場合は None を返すことを確認する。"""
    assert normalize_chart_data([], {"type": "bar"}) is None
    assert normalize_chart_data([{"a": 1}], None) is None
