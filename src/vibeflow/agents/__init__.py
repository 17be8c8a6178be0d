from vibeflow.agents.architect import Architect
from vibeflow.agents.integration import IntegrationError, IntegrationPhase
from vibeflow.agents.librarian import Librarian
from vibeflow.agents.mediator import Mediator, MediationOutcome, evaluate_mediation
from vibeflow.agents.reporter import Reporter
from vibeflow.agents.review import ReviewFailedError, ReviewGate, ReviewVerdict

__all__ = [
    "Architect",
    "IntegrationError",
    "IntegrationPhase",
    "Librarian",
    "MediationOutcome",
    "Mediator",
    "Reporter",
    "ReviewFailedError",
    "ReviewGate",
    "ReviewVerdict",
    "evaluate_mediation",
]
