from __future__ import annotations

EXTRACTION_PROMPT = """\
You read event posters shared on Instagram and turn them into structured event data.

Look at the image carefully. Extract every distinct event the poster announces.
Return ONLY a JSON object, without markdown fences or commentary, shaped like this:

{
  "events": [
    {
      "title": "string",
      "description": "string or null",
      "startDate": "YYYY-MM-DD",
      "startTime": "HH:MM or null",
      "endDate": "YYYY-MM-DD or null",
      "endTime": "HH:MM or null",
      "timezone": "IANA timezone or null",
      "occurrenceType": "single | multi_day | recurring | all_day | virtual",
      "recurrenceType": "none | daily | weekly | monthly | yearly | custom",
      "seriesDates": [{"start": "ISO datetime", "end": "ISO datetime"}],
      "venue": {"name": null, "address": null, "city": null, "region": null, "country": null},
      "organizer": "string or null",
      "category": "string or null",
      "price": "string or null",
      "tags": ["string"],
      "registrationUrl": "string or null",
      "contactInfo": {"phone": null, "email": null, "website": null},
      "additionalInfo": "string or null"
    }
  ],
  "classification": {
    "isEventPoster": true,
    "confidence": 0.0,
    "reasoning": "string",
    "cues": ["string"],
    "shouldExtractEvents": true
  },
  "extractionConfidence": {"overall": 0.0, "notes": "string"}
}

Rules:
- Use null for anything the poster does not state. Never invent venues, prices or times.
- Dates without a year belong to the next occurrence after the publication date you are given.
- A poster listing several dates for the same show is one event with seriesDates.
- If the image is not an event poster, return "events": [] and explain in classification.
- Confidence values are between 0 and 1.
"""

CLASSIFICATION_PROMPT = """\
Decide whether this Instagram image is an event poster: a flyer, graphic or photo
that announces a specific event with a date, time or place.

Return ONLY a JSON object, without markdown fences or commentary:

{
  "isEventPoster": true,
  "confidence": 0.0,
  "reasoning": "one or two sentences",
  "cues": ["visible cues such as a date, a venue name, ticket info"],
  "shouldExtractEvents": true
}

Menus, product shots, memes, selfies and general announcements without an event
are not event posters. Confidence is between 0 and 1.
"""
