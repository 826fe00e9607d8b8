"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates, for tomorrow morning (Seoul time):
  - 2 trips run by verified providers
  - 6 pickup requests around Gangnam elementary schools
  - invitations in every state (accepted, rejected, pending)
  - one unmatched request cancelled by its parent

Everything goes through the engine services, so the rows satisfy the same
invariants as live traffic.
"""

import asyncio
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

from schoolpool.config import settings
from schoolpool.domain.entities import Actor, Location, Place
from schoolpool.infrastructure.blob_store import SignedUrlBlobStore
from schoolpool.infrastructure.database import async_session_factory, engine
from schoolpool.infrastructure.locks import LocalLockManager
from schoolpool.infrastructure.publisher import LoggingEventPublisher
from schoolpool.services.engine import PickupEngine

SCHOOL = Place("Daechi Elementary School", Location(37.4995, 127.0590))

PROVIDERS = [
    Actor("provider-minji", is_verified_provider=True),
    Actor("provider-jihoon", is_verified_provider=True),
]

REQUESTERS = [
    ("parent-seoyeon", "Dogok-dong Tower Palace", 37.4886, 127.0535),
    ("parent-hyunwoo", "Daechi Eunma Apartments", 37.4981, 127.0636),
    ("parent-yuna", "Yeoksam-dong Station Exit 3", 37.5006, 127.0364),
    ("parent-dongha", "Samsung-dong Coex", 37.5118, 127.0592),
    ("parent-sora", "Gaepo-dong Jugong 1", 37.4815, 127.0557),
    ("parent-taeyang", "Seolleung Station", 37.5045, 127.0490),
]


async def seed():
    pickup = PickupEngine(
        async_session_factory,
        LocalLockManager(),
        LoggingEventPublisher(),
        SignedUrlBlobStore(),
    )
    tz = ZoneInfo(settings.service_timezone)
    tomorrow = datetime.now(tz).date() + timedelta(days=1)
    departs = datetime.combine(tomorrow, time(8, 0), tzinfo=tz)

    # ── Trips ─────────────────────────────────────────────────────────
    trips = [
        await pickup.trips.create_trip(
            p, departs, capacity=3, title=f"Morning run #{i + 1}"
        )
        for i, p in enumerate(PROVIDERS)
    ]
    print(f"  Created {len(trips)} trips")

    # ── Requests ──────────────────────────────────────────────────────
    requesters = []
    requests = []
    for offset, (profile, text, lat, lng) in enumerate(REQUESTERS):
        actor = Actor(profile)
        req = await pickup.requests.create_request(
            actor,
            departs + timedelta(minutes=5 * offset),
            Place(text, Location(lat, lng)),
            SCHOOL,
        )
        requesters.append(actor)
        requests.append(req)
    print(f"  Created {len(requests)} pickup requests")

    # ── Invitations ───────────────────────────────────────────────────
    # Trip 1 invites the first four; trip 2 invites requests 3 to 5.
    first = [
        await pickup.invitations.send_invitation(trips[0].id, r.id, PROVIDERS[0])
        for r in requests[:4]
    ]
    second = [
        await pickup.invitations.send_invitation(trips[1].id, r.id, PROVIDERS[1])
        for r in requests[2:5]
    ]
    print(f"  Sent {len(first) + len(second)} invitations")

    await pickup.invitations.accept_invitation(first[0].id, requesters[0])
    await pickup.invitations.accept_invitation(first[1].id, requesters[1])
    # Accepting trip 2's offer supersedes trip 1's offer for the same request.
    await pickup.invitations.accept_invitation(second[0].id, requesters[2])
    await pickup.invitations.reject_invitation(first[3].id, requesters[3])
    print("  Accepted 3, rejected 1, left the rest pending")

    # ── Cancellation ──────────────────────────────────────────────────
    await pickup.requests.request_cancellation(requests[5].id, requesters[5])
    print("  Cancelled 1 unmatched request")

    print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
