import calendar
import logging
import math
from datetime import date, datetime, timedelta

from . import config
from .utils import normalize_name, parse_iso, safe_float

logger = logging.getLogger(__name__)

WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

PERIODS = ("all", "today", "yesterday", "week", "month", "year", "customDate", "customMonth", "customYear")
CHART_MODES = ("weekly", "monthly", "yearly", "customDate")


def _tz(tz):
    return config.report_timezone() if tz is None else tz


def _now(now, tz):
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)


def sale_time(sale, tz=None):
    tz = _tz(tz)
    parsed = parse_iso(sale.get("timestamp"))
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


# -------------------------------
# Cleaning & filtering
# -------------------------------
def valid_sales(sales, tz=None):
    """Drops sales without a parseable timestamp; newest first."""
    tz = _tz(tz)
    rows = []
    for s in sales:
        moment = sale_time(s, tz)
        if moment is None:
            logger.warning("Sale %s has an invalid or missing timestamp", s.get("id"))
            continue
        rows.append((moment, s))
    rows.sort(key=lambda r: r[0], reverse=True)
    return [s for _, s in rows]


def _week_bounds(day):
    start = day - timedelta(days=day.weekday())
    return start, start + timedelta(days=6)


def _in_days(sale, tz, first, last):
    moment = sale_time(sale, tz)
    return moment is not None and first <= moment.date() <= last


def filter_sales(sales, period="all", now=None, start=None, end=None, month=None, year=None, tz=None):
    """
    period: all, today, yesterday, week, month, year,
            customDate (start..end inclusive), customMonth (month+year), customYear (year)
    Custom periods with missing parameters leave the list unfiltered.
    """
    if period not in PERIODS and period not in (None, ""):
        raise ValueError(f"Unknown period: {period}")
    tz = _tz(tz)
    today = _now(now, tz).date()

    if period in (None, "", "all"):
        return list(sales)
    if period == "today":
        return [s for s in sales if _in_days(s, tz, today, today)]
    if period == "yesterday":
        day = today - timedelta(days=1)
        return [s for s in sales if _in_days(s, tz, day, day)]
    if period == "week":
        first, last = _week_bounds(today)
        return [s for s in sales if _in_days(s, tz, first, last)]
    if period == "month":
        last_day = calendar.monthrange(today.year, today.month)[1]
        return [s for s in sales if _in_days(s, tz, today.replace(day=1), today.replace(day=last_day))]
    if period == "year":
        return [s for s in sales if _in_days(s, tz, date(today.year, 1, 1), date(today.year, 12, 31))]
    if period == "customDate":
        if not start or not end:
            return list(sales)
        return [s for s in sales if _in_days(s, tz, start, end)]
    if period == "customMonth":
        if not month or not year:
            return list(sales)
        out = []
        for s in sales:
            moment = sale_time(s, tz)
            if moment is not None and moment.month == int(month) and moment.year == int(year):
                out.append(s)
        return out
    if period == "customYear":
        if not year:
            return list(sales)
        return [s for s in sales if (sale_time(s, tz) or datetime.min).year == int(year)]
    return list(sales)


def search_sales(sales, term):
    term = normalize_name(term)
    if not term:
        return list(sales)
    out = []
    for s in sales:
        if term in normalize_name(s.get("customerName")) or term in str(s.get("customerPhone", "")):
            out.append(s)
            continue
        for p in s.get("products", []):
            if term in normalize_name(p.get("name")) or term in str(p.get("price", "")):
                out.append(s)
                break
    return out


# -------------------------------
# Summaries
# -------------------------------
def _blank():
    return {"total": 0.0, "online": 0.0, "cash": 0.0}


def _add(summary, sale):
    amount = safe_float(sale.get("total"))
    summary["total"] += amount
    if str(sale.get("paymentMethod", "")).lower() == "online":
        summary["online"] += amount
    else:
        summary["cash"] += amount


def payment_summary(sales, now=None, tz=None):
    tz = _tz(tz)
    current = _now(now, tz)
    today = current.date()
    yesterday = today - timedelta(days=1)
    out = {"today": _blank(), "yesterday": _blank(), "month": _blank(), "year": _blank()}

    for s in sales:
        moment = sale_time(s, tz)
        if moment is None:
            continue
        day = moment.date()
        if day == today:
            _add(out["today"], s)
        if day == yesterday:
            _add(out["yesterday"], s)
        if day.year == today.year and day.month == today.month:
            _add(out["month"], s)
        if day.year == today.year:
            _add(out["year"], s)

    for bucket in out.values():
        for key in bucket:
            bucket[key] = round(bucket[key], 2)
    return out


def totals(sales):
    return {
        "totalSales": round(sum(safe_float(s.get("total")) for s in sales), 2),
        "totalOrders": len(sales),
    }


def product_sales(sales):
    counts = {}
    total_products = 0
    for s in sales:
        for p in s.get("products", []):
            qty = p.get("quantity", 0) or 0
            total_products += qty
            entry = counts.setdefault(p.get("name", ""), {"count": 0, "revenue": 0.0})
            entry["count"] += qty
            entry["revenue"] += safe_float(p.get("lineTotal"))

    rows = [
        {"name": name, "count": v["count"], "revenue": round(v["revenue"], 2)}
        for name, v in counts.items()
    ]
    rows.sort(key=lambda r: r["count"], reverse=True)
    return {"totalProductsSold": total_products, "products": rows}


# -------------------------------
# Chart data
# -------------------------------
def week_of_month(day):
    return math.ceil(day / 7)


def _with_trend(points):
    previous = None
    for point in points:
        if previous is None or point["sales"] == previous:
            point["trend"] = "none"
        elif point["sales"] > previous:
            point["trend"] = "up"
        else:
            point["trend"] = "down"
        previous = point["sales"]
    return points


def sales_chart(sales, mode="weekly", tz=None):
    """Totals bucketed by weekday, week of month, month or calendar date."""
    tz = _tz(tz)
    if mode not in CHART_MODES:
        raise ValueError(f"Unknown chart mode: {mode}")

    buckets = {}
    for s in sales:
        moment = sale_time(s, tz)
        if moment is None:
            continue
        if mode == "weekly":
            order = moment.weekday()
            label = WEEKDAYS[order]
        elif mode == "monthly":
            order = week_of_month(moment.day)
            label = f"Week {order}"
        elif mode == "yearly":
            order = moment.month
            label = MONTHS[order - 1]
        else:
            order = moment.date().toordinal()
            label = f"{MONTHS[moment.month - 1]} {moment.day}, {moment.year}"
        entry = buckets.setdefault(order, {"date": label, "sales": 0.0})
        entry["sales"] += safe_float(s.get("total"))

    points = []
    for order in sorted(buckets):
        entry = buckets[order]
        points.append({"date": entry["date"], "sales": round(entry["sales"], 2)})
    return _with_trend(points)


def sales_comparison(sales, period="month", now=None, tz=None):
    """Zero-filled totals for the current week (by day), month (by week) or year (by month)."""
    tz = _tz(tz)
    today = _now(now, tz).date()

    if period == "week":
        first, last = _week_bounds(today)
        data = {label: 0.0 for label in WEEKDAYS}
        key = lambda moment: WEEKDAYS[moment.weekday()]
    elif period == "month":
        days = calendar.monthrange(today.year, today.month)[1]
        first, last = today.replace(day=1), today.replace(day=days)
        data = {f"Week {i}": 0.0 for i in range(1, week_of_month(days) + 1)}
        key = lambda moment: f"Week {week_of_month(moment.day)}"
    elif period == "year":
        first, last = date(today.year, 1, 1), date(today.year, 12, 31)
        data = {label: 0.0 for label in MONTHS}
        key = lambda moment: MONTHS[moment.month - 1]
    else:
        raise ValueError(f"Unknown comparison period: {period}")

    for s in sales:
        moment = sale_time(s, tz)
        if moment is not None and first <= moment.date() <= last:
            data[key(moment)] += safe_float(s.get("total"))

    return [{"period": label, "totalSales": round(value, 2)} for label, value in data.items()]


def hour_label(hour):
    return f"{hour % 12 or 12}:00 {'AM' if hour < 12 else 'PM'}"


def hourly_report(sales, mode=None, selected=None, tz=None):
    """
    24 hourly buckets. mode="day" with selected="YYYY-MM-DD" or
    mode="month" with selected="YYYY-MM" narrows the sales first.
    """
    tz = _tz(tz)
    day = month = None
    if selected:
        try:
            if mode == "day":
                day = date.fromisoformat(selected)
            elif mode == "month":
                year_text, month_text = selected.split("-")[:2]
                month = (int(year_text), int(month_text))
        except ValueError as exc:
            raise ValueError(f"Invalid period: {selected}") from exc

    data = [0.0] * 24
    for s in sales:
        moment = sale_time(s, tz)
        if moment is None:
            continue
        if day is not None and moment.date() != day:
            continue
        if month is not None and (moment.year, moment.month) != month:
            continue
        data[moment.hour] += safe_float(s.get("total"))

    return [{"hour": hour_label(h), "totalSales": round(v, 2)} for h, v in enumerate(data)]


def heat_color(total_sales):
    if total_sales > 1000:
        return "#FF0000"
    if total_sales > 500:
        return "#FFA500"
    if total_sales > 100:
        return "#008000"
    return "#0000FF"
