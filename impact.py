"""Read-only rollups over listings: environmental impact and the leaderboard."""

from typing import List

from database import LISTINGS, USERS, Database

# kg of CO2 avoided per kg of recycled e-waste
CO2_PER_KG = 1.44


def impact_stats(database: Database) -> dict:
    total = donated = sold = 0.0
    donation_count = sale_count = 0

    for item in database[LISTINGS].find({}, {"weight": 1, "donation_or_sale": 1}):
        try:
            weight = float(item.get("weight") or 0)
        except (TypeError, ValueError):
            weight = 0.0
        total += weight
        if item.get("donation_or_sale") == "donate":
            donated += weight
            donation_count += 1
        else:
            sold += weight
            sale_count += 1

    return {
        "total_ewaste": round(total, 2),
        "total_donated": round(donated, 2),
        "total_sold": round(sold, 2),
        "co2_saved": round(total * CO2_PER_KG, 2),
        "donation_count": donation_count,
        "sale_count": sale_count,
    }


def leaderboard(database: Database) -> List[dict]:
    weights = {
        str(doc["_id"]): float(doc.get("weight") or 0)
        for doc in database[LISTINGS].find({}, {"weight": 1})
    }

    rows = []
    for user in database[USERS].find({}):
        items = [weights[i] for i in user.get("recycled_items", []) if i in weights]
        rows.append({
            "_id": str(user["_id"]),
            "name": user.get("name"),
            "email": user.get("email"),
            "wallet_address": user.get("wallet_address"),
            "total_quantity": round(sum(items), 2),
            "items_recycled": len(items),
        })
    rows.sort(key=lambda r: r["total_quantity"], reverse=True)
    return rows
