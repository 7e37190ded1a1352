"""
Matchday — predictions.py
Generated "predictions": a random score inside league-typical bands, the
implied winner, a confidence figure and a templated review.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import windows
from windows import LeagueWindow, rfc3339

# -------------------------
# Review templates
# -------------------------
BASKETBALL_CLOSE = (
    "A closely contested battle where execution in the final quarter decides it. "
    "{winner}'s experience gives them the edge in clutch moments while {loser} stays "
    "competitive throughout but cannot convert late.",
    "Both teams trade leads in an entertaining matchup. {loser}'s fourth-quarter push "
    "falls just short and key defensive stops from {winner} seal the win.",
)
BASKETBALL_MODERATE = (
    "{winner} imposes their will for long stretches but {loser} refuses to go quietly. "
    "Depth at multiple positions wears {loser} down over 48 minutes.",
    "A decisive statement win for {winner}. {loser} has their moments but cannot keep "
    "it consistent on either end once {winner} takes control after halftime.",
)
BASKETBALL_BLOWOUT = (
    "{winner} dismantles {loser} in convincing fashion. By halftime the outcome is "
    "already decided and the second half is garbage time.",
    "{winner} shoots the lights out and plays stifling defense. {loser} never gets "
    "traction on offense and trails by 20+ entering the fourth.",
)
SOCCER_WIN = (
    "{winner} control the midfield and turn possession into chances; {loser} sit deep "
    "but the pressure tells. Expect {score} with {ou} goals.",
    "Set pieces look like the difference: {winner} carry the bigger aerial threat and "
    "{loser} struggle to defend the second ball. Final call {score}, {ou}.",
)
SOCCER_DRAW = (
    "{home} and {away} cancel each other out in a cagey contest. Neither side wants to "
    "lose this one; {score} with {ou} goals feels right.",
    "Two organised defences and few clear openings. A share of the points at {score}, "
    "{ou}.",
)

SOCCER_SCORES = (
    "1-0", "2-0", "3-0", "2-1", "3-1", "3-2",
    "0-1", "0-2", "0-3", "1-2", "1-3", "2-3",
    "1-1", "2-2", "0-0",
)
SOCCER_OVER_UNDER = (
    "Over 2.5", "Over 2.75", "Over 3.5", "Over 3.75",
    "Under 2.5", "Under 2.75", "Under 3.5", "Under 3.75",
)

SPORT_ICON = {"basketball": "\U0001F3C0", "soccer": "⚽"}


@dataclass(frozen=True)
class Prediction:
    event_id: str
    league: str
    home_team: str
    away_team: str
    predicted_winner: str
    predicted_score: str
    total_score: str
    confidence: int
    review: str
    generated_at: datetime
    sport: str = "basketball"

    @property
    def text(self) -> str:
        icon = SPORT_ICON.get(self.sport, "")
        return (
            "Prediction\n\n"
            f"{icon} {self.home_team} vs {self.away_team}\n"
            f"Predicted Score: {self.predicted_score}\n"
            f"Total Score: {self.total_score}\n"
            f"Predicted Winner: {self.predicted_winner}\n"
            f"Confidence: {self.confidence}%\n\n"
            f"Review:\n{self.review}\n\n"
            f"Generated: {rfc3339(self.generated_at)}"
        )


def _basketball(home: str, away: str, r: random.Random):
    home_score = r.randint(95, 124)
    away_score = r.randint(95, 124)
    while away_score == home_score:
        away_score = r.randint(95, 124)
    winner, loser = (home, away) if home_score > away_score else (away, home)
    margin = abs(home_score - away_score)
    if margin <= 5:
        pool = BASKETBALL_CLOSE
    elif margin <= 12:
        pool = BASKETBALL_MODERATE
    else:
        pool = BASKETBALL_BLOWOUT
    review = r.choice(pool).format(winner=winner, loser=loser)
    return winner, f"{home_score}-{away_score}", str(home_score + away_score), review


def _soccer(home: str, away: str, r: random.Random):
    score = r.choice(SOCCER_SCORES)
    ou = r.choice(SOCCER_OVER_UNDER)
    h, a = (int(x) for x in score.split("-"))
    if h == a:
        winner = "Draw"
        review = r.choice(SOCCER_DRAW).format(home=home, away=away, score=score, ou=ou)
    else:
        winner, loser = (home, away) if h > a else (away, home)
        review = r.choice(SOCCER_WIN).format(winner=winner, loser=loser, score=score, ou=ou)
    return winner, score, ou, review


def generate_prediction(
    window: LeagueWindow,
    event_id: str,
    home: str,
    away: str,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> Prediction:
    r = rng or random.Random()
    if window.sport == "soccer":
        winner, score, total, review = _soccer(home, away, r)
    else:
        winner, score, total, review = _basketball(home, away, r)
    return Prediction(
        event_id=str(event_id),
        league=window.league,
        home_team=home,
        away_team=away,
        predicted_winner=winner,
        predicted_score=score,
        total_score=total,
        confidence=r.randint(55, 75),
        review=review,
        generated_at=now or windows.utcnow(),
        sport=window.sport,
    )
