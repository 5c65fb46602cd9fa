from .models import EnvironmentTag, RolloutStep

STABLE = EnvironmentTag.STABLE
CANDIDATE = EnvironmentTag.CANDIDATE


def weights(candidate):
    """Split with `candidate` percent on the candidate population"""
    return {STABLE: 100 - candidate, CANDIDATE: candidate}


def split_weights(stable_count, candidate_count):
    """Weights proportional to instance counts, summing to exactly 100"""
    total = stable_count + candidate_count
    if total == 0:
        return weights(0)
    return weights(round(100 * candidate_count / total))


class RolloutStrategy:
    """Turns (deployment, health snapshot) into the next RolloutStep.

    decide() must be a pure function of its arguments. Whatever a strategy
    needs to remember between ticks goes into step.progress; the controller
    merges it into deployment.progress once the step is applied.
    """

    kind = None
    params_class = None

    def __init__(self, params=None):
        self.params = params if params is not None else self.params_class()

    @classmethod
    def from_params(cls, data):
        return cls(cls.params_class.from_dict(data))

    def decide(self, deployment, snapshot):
        raise NotImplementedError

    @staticmethod
    def elapsed(deployment, snapshot, key="phase_started_at"):
        started = deployment.progress.get(key)
        return 0.0 if started is None else snapshot.now - started

    @staticmethod
    def wait():
        return RolloutStep()

    @staticmethod
    def abort(reason):
        return RolloutStep.aborting(reason)
