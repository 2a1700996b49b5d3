"""Mock capability endpoints backed by demo data.

    uvicorn examples.mock_capability_server:app --port 10001

`/cost-estimate` fails for procedures containing "fail" so the configured
fallback chain can be exercised.
"""

from __future__ import annotations

import random
from typing import Any
from urllib.parse import quote_plus

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

app = FastAPI(title="mock-capabilities")

_HOSPITALS: list[dict[str, Any]] = [
    {
        "id": "bumrungrad",
        "name": "Bumrungrad International Hospital",
        "country": "Thailand",
        "location": "Bangkok, Thailand",
        "image_url": "https://images.unsplash.com/photo-1538108149393-fbbd81895907?w=800",
        "accreditation_info": "JCI Accredited since 2002, ISO 9001:2015 certified",
        "price_range": "premium",
        "estimated_cost_low": 5000,
        "estimated_cost_high": 50000,
        "rating": 4.9,
        "contact_email": "info@bumrungrad.com",
    },
    {
        "id": "bangkok-hospital",
        "name": "Bangkok Hospital",
        "country": "Thailand",
        "location": "Bangkok, Thailand",
        "image_url": "https://images.unsplash.com/photo-1519494026892-80bbd2d6fd0d?w=800",
        "accreditation_info": "JCI Accredited, Advanced Stroke Center",
        "price_range": "mid-range",
        "estimated_cost_low": 4000,
        "estimated_cost_high": 40000,
        "rating": 4.8,
        "contact_email": "contact@bangkokhospital.com",
    },
    {
        "id": "apollo-chennai",
        "name": "Apollo Hospitals Chennai",
        "country": "India",
        "location": "Chennai, India",
        "image_url": "https://images.unsplash.com/photo-1516549655169-df83a0774514?w=800",
        "accreditation_info": "JCI Accredited, NABH certified",
        "price_range": "budget",
        "estimated_cost_low": 3000,
        "estimated_cost_high": 30000,
        "rating": 4.7,
        "contact_email": "international@apollohospitals.com",
    },
]

_AIRLINES = [
    ("Emirates", "🛫"),
    ("Qatar Airways", "✈️"),
    ("Singapore Airlines", "🛩️"),
    ("Turkish Airlines", "🛬"),
]


@app.post("/cost-estimate")
async def cost_estimate(request: Request) -> JSONResponse:
    body = await request.json()
    procedure = str(body.get("procedure") or "procedure")
    if "fail" in procedure.lower():
        raise HTTPException(status_code=503, detail="estimate backend unavailable")
    return JSONResponse({"procedure": procedure, "country": body.get("country"), "totalLow": 6000, "totalHigh": 9000})


@app.post("/fetch-hospitals")
async def fetch_hospitals(request: Request) -> JSONResponse:
    body = await request.json()
    country = str(body.get("country") or "").lower()
    hospitals = [h for h in _HOSPITALS if not country or h["country"].lower() == country]
    return JSONResponse({"hospitals": hospitals, "cached": not body.get("forceRefresh")})


@app.post("/flight-search")
async def flight_search(request: Request) -> JSONResponse:
    body = await request.json()
    origin = body.get("origin") or "London"
    destination = body.get("destination") or "Bangkok"
    passengers = int(body.get("passengers") or 1)
    flights = []
    for index, (airline, logo) in enumerate(_AIRLINES):
        stops = 0 if index == 0 else 1 if index == 1 else random.randint(0, 1)
        flights.append(
            {
                "id": f"flight-{index + 1}",
                "airline": airline,
                "logo": logo,
                "origin": origin,
                "destination": destination,
                "departureDate": body.get("departureDate"),
                "price": round((800 + index * 150 + random.random() * 200) * passengers),
                "duration": "11h",
                "stops": "Direct" if stops == 0 else f"{stops} stop",
                "departureTime": f"{8 + index * 3:02d}:00",
                "arrivalTime": f"{(19 + index * 3) % 24:02d}:00",
                "bookingUrl": f"https://www.google.com/travel/flights?q={quote_plus(f'{origin} to {destination}')}",
            }
        )
    return JSONResponse({"flights": flights})


@app.post("/scrape")
async def scrape(request: Request) -> PlainTextResponse:
    body = await request.json()
    urls = body.get("urls") or []
    lines = [f"# Source: {url}" for url in urls]
    lines += [f"- {h['name']} ({h['location']}): USD {h['estimated_cost_low']}-{h['estimated_cost_high']}" for h in _HOSPITALS]
    return PlainTextResponse("\n".join(lines))
