import httpx
import asyncio
import uuid
from ridefare.middleware.auth import create_access_token


BASE_URL = "http://localhost:8000"


async def safe_request(resp: httpx.Response, step: str):
    """Print response + fail loudly if error"""
    print(f"{step}: {resp.status_code}")

    try:
        print(resp.json())
    except ValueError:
        print(resp.text)

    resp.raise_for_status()


async def main():

    run = uuid.uuid4().hex[:8]
    admin_headers = {"Authorization": f"Bearer {create_access_token({'sub': 'admin-smoke', 'role': 'admin'})}"}
    rider_headers = {"Authorization": f"Bearer {create_access_token({'sub': f'rider-{run}', 'role': 'user'})}"}
    driver_headers = {"Authorization": f"Bearer {create_access_token({'sub': f'driver-{run}', 'role': 'provider'})}"}

    async with httpx.AsyncClient(timeout=30.0) as client:

        # ---------------------------------------------------
        print("\n1️⃣ Checking Health...")
        resp = await client.get(f"{BASE_URL}/health")
        await safe_request(resp, "Health")

        # ---------------------------------------------------
        print("\n2️⃣ Publishing price rules...")

        promo = f"SMOKE{run}".upper()
        rules = [
            {
                "rule_id": f"base-{run}",
                "rule_name": "Smoke base fare",
                "category": "base_pricing",
                "rule_type": "fixed_amount",
                "pricing_model": "distance_based",
                "base_rate": "3.00",
                "per_km_rate": "1.50",
                "per_minute_rate": "0.25",
                "minimum_fare": "5.00",
            },
            {
                "rule_id": f"promo-{run}",
                "rule_name": "Smoke promo",
                "category": "promotion",
                "rule_type": "percentage",
                "discount_percent": "10",
                "max_discount": "5.00",
                "promo_code": promo,
                "requires_code": True,
                "max_usage_per_user": 1,
            },
        ]

        for body in rules:
            resp = await client.post(f"{BASE_URL}/v1/rules", json=body, headers=admin_headers)
            await safe_request(resp, f"Create {body['rule_id']}")
            resp = await client.post(
                f"{BASE_URL}/v1/rules/{body['rule_id']}/approve",
                json={"approval_notes": "smoke run"},
                headers=admin_headers,
            )
            await safe_request(resp, f"Approve {body['rule_id']}")

        # ---------------------------------------------------
        print("\n3️⃣ Rider asks for a quote...")

        quote_payload = {
            "estimated_distance_km": "12.4",
            "estimated_duration_min": "28",
            "vehicle_category": "car",
            "promo_codes": [promo.lower()],
            "platform_fee": "1.50",
        }

        resp = await client.post(f"{BASE_URL}/v1/quotes", json=quote_payload, headers=rider_headers)
        await safe_request(resp, "Quote")

        quote_id = resp.json().get("quote_id")
        if not quote_id:
            raise Exception("Quote ID not found in response")

        # ---------------------------------------------------
        print("\n4️⃣ Rider creates order...")

        order_payload = {
            "order_type": "ride",
            "ride": {
                "vehicle_category": "car",
                "pickup": {"address": "MG Road", "lat": 12.9716, "lng": 77.5946},
                "dropoff": {"address": "Indiranagar", "lat": 12.9784, "lng": 77.6408},
                "estimated_distance": "12.4",
                "estimated_duration": 28,
            },
        }

        resp = await client.post(f"{BASE_URL}/v1/orders", json=order_payload, headers=rider_headers)
        await safe_request(resp, "Create Order")

        order_id = resp.json().get("order_id")
        if not order_id:
            raise Exception("Order ID not found")

        # ---------------------------------------------------
        print("\n5️⃣ Attaching quote...")
        resp = await client.post(
            f"{BASE_URL}/v1/orders/{order_id}/quote",
            json={"quote_id": quote_id},
            headers=rider_headers,
        )
        await safe_request(resp, "Attach Quote")

        # ---------------------------------------------------
        print("\n6️⃣ Driver accepts order...")
        resp = await client.post(f"{BASE_URL}/v1/orders/{order_id}/accept", headers=driver_headers)
        await safe_request(resp, "Accept")

        # ---------------------------------------------------
        print("\n7️⃣ Starting and ending trip...")
        resp = await client.post(f"{BASE_URL}/v1/orders/{order_id}/start", headers=driver_headers)
        await safe_request(resp, "Start Trip")

        resp = await client.post(
            f"{BASE_URL}/v1/orders/{order_id}/finish",
            json={"actual_distance": 12.9, "actual_duration": 31},
            headers=driver_headers,
        )
        await safe_request(resp, "End Trip")

        # ---------------------------------------------------
        print("\n8️⃣ Completing payment...")
        resp = await client.post(f"{BASE_URL}/v1/orders/{order_id}/complete", headers=admin_headers)
        await safe_request(resp, "Complete")

        print("\n✅ FLOW COMPLETED SUCCESSFULLY")


if __name__ == "__main__":
    asyncio.run(main())
