from medvoy_relay.options import FLIGHT_IMAGE_URL, normalize_options, result_items

_HOSPITAL = {
    "id": "bumrungrad",
    "name": "Bumrungrad International Hospital",
    "location": "Bangkok, Thailand",
    "accreditation_info": "JCI Accredited since 2002",
    "rating": 4.9,
    "price_range": "premium",
    "image_url": "https://images.unsplash.com/photo-1538108149393-fbbd81895907?w=800",
    "contact_email": "info@bumrungrad.com",
    "estimated_cost_low": 5000,
    "estimated_cost_high": 50000,
    "specialties": ["Orthopedics"],
}


def test_hospital_items_are_renamed_to_option_cards() -> None:
    options = normalize_options({"hospitals": [_HOSPITAL]}, options_format="hospitals", result_key="hospitals")

    assert options == [
        {
            "id": "bumrungrad",
            "title": "Bumrungrad International Hospital",
            "description": "Bangkok, Thailand • JCI Accredited since 2002 • Rating: 4.9/5",
            "price": "premium",
            "imageUrl": "https://images.unsplash.com/photo-1538108149393-fbbd81895907?w=800",
            "badge": "JCI Accredited since 2002",
            "contact_email": "info@bumrungrad.com",
            "estimated_cost_low": 5000,
            "estimated_cost_high": 50000,
        }
    ]


def test_flight_items_use_fixed_image_and_keep_booking_link() -> None:
    flight = {
        "id": "flight-2",
        "airline": "Qatar Airways",
        "logo": "✈️",
        "origin": "London",
        "destination": "Bangkok",
        "duration": "12h",
        "stops": "1 stop",
        "price": 1040,
        "departureTime": "11:00",
        "arrivalTime": "23:00",
        "bookingUrl": "https://example.test/book",
    }

    [option] = normalize_options({"flights": [flight]}, options_format="flights", result_key="flights")

    assert option["title"] == "Qatar Airways ✈️"
    assert option["description"] == "London → Bangkok • 12h • 1 stop"
    assert option["price"] == "$1040"
    assert option["imageUrl"] == FLIGHT_IMAGE_URL
    assert option["details"] == "Depart: 11:00 • Arrive: 23:00"
    assert option["bookingUrl"] == "https://example.test/book"


def test_normalization_keeps_order_and_count() -> None:
    hospitals = [dict(_HOSPITAL, id=f"h{i}", rating=5 - i) for i in range(4)]

    options = normalize_options(hospitals, options_format="hospitals")

    assert [option["id"] for option in options] == ["h0", "h1", "h2", "h3"]


def test_cost_estimate_dict_becomes_single_option() -> None:
    [option] = normalize_options({"totalLow": 6000, "totalHigh": 9000, "currency": "USD"}, options_format="cost_estimate")

    assert option["id"] == "estimate-1"
    assert option["price"] == "$6,000 - $9,000"
    assert option["estimated_cost_low"] == 6000
    assert option["estimated_cost_high"] == 9000
    assert option["currency"] == "USD"


def test_cost_estimate_list_keeps_existing_ids_and_titles() -> None:
    options = normalize_options(
        [{"id": "a", "procedure": "Hip replacement", "low": 7000}, {"title": "Dental implants", "high": 2500.4}],
        options_format="cost_estimate",
    )

    assert [(o["id"], o["title"], o["price"]) for o in options] == [
        ("a", "Hip replacement", "$7,000"),
        ("estimate-2", "Dental implants", "$2,500"),
    ]


def test_raw_format_passes_items_through() -> None:
    items = [{"anything": 1}, "plain", 3]
    assert normalize_options(items, options_format="raw") == items


def test_result_items_selection() -> None:
    assert result_items({"hospitals": [1, 2]}, "hospitals") == [1, 2]
    assert result_items({"hospitals": {"id": 1}}, "hospitals") == [{"id": 1}]
    assert result_items({"other": []}, "hospitals") == []
    assert result_items([1, 2], "hospitals") == [1, 2]
    assert result_items({"totalLow": 1}, None) == [{"totalLow": 1}]
    assert result_items(None, None) == []
