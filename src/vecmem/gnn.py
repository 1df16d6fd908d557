"""
PyTorch graph-attention model behind the learned query enhancer.

The query is a node attending over its retrieved neighbors plus a self
loop. Neighbor relevance weights enter the attention logits as a log
prior, so a neighbor with weight 0 is effectively masked out.

Importing this module requires torch; ``vecmem.enhancer`` imports it lazily.
"""

import logging
import math
from typing import Optional, Sequence

import numpy as np
import torch
from torch import nn
from torch.nn import functional as F

from .errors import ConfigurationError
from .kernels import adamw_step

logger = logging.getLogger(__name__)

# Floor for neighbor weights before taking the log prior
MIN_PRIOR = 1e-6


class GraphAttentionModel(nn.Module):
    """
    One multi-head graph-attention layer with residual + LayerNorm.

    forward(query [B, D], neighbors [B, N, D], weights [B, N]) -> [B, output_dim]
    """

    def __init__(self, input_dim: int, output_dim: int, heads: int = 4, hidden_dim: Optional[int] = None):
        super().__init__()
        if heads < 1:
            raise ConfigurationError(f"heads must be >= 1, got {heads}")
        hidden = hidden_dim or input_dim
        # round up so the hidden width splits evenly across heads
        hidden = heads * math.ceil(hidden / heads)

        self.input_dim = input_dim
        self.output_dim = output_dim
        self.heads = heads
        self.head_dim = hidden // heads

        self.q_proj = nn.Linear(input_dim, hidden)
        self.k_proj = nn.Linear(input_dim, hidden)
        self.v_proj = nn.Linear(input_dim, hidden)
        self.out_proj = nn.Linear(hidden, input_dim)
        self.norm = nn.LayerNorm(input_dim)
        self.output = nn.Linear(input_dim, output_dim)
        self.score_head = nn.Linear(output_dim, 1)

    def forward(self, query: torch.Tensor, neighbors: torch.Tensor, weights: torch.Tensor) -> torch.Tensor:
        batch = query.shape[0]
        nodes = torch.cat([query.unsqueeze(1), neighbors], dim=1)  # [B, N+1, D]
        prior = torch.cat([torch.ones(batch, 1, dtype=weights.dtype), weights], dim=1)
        log_prior = torch.log(prior.clamp_min(MIN_PRIOR))

        q = self.q_proj(query).view(batch, self.heads, 1, self.head_dim)
        k = self.k_proj(nodes).view(batch, -1, self.heads, self.head_dim).transpose(1, 2)
        v = self.v_proj(nodes).view(batch, -1, self.heads, self.head_dim).transpose(1, 2)

        logits = (q @ k.transpose(-2, -1)) / math.sqrt(self.head_dim)
        logits = logits + log_prior[:, None, None, :]
        attn = torch.softmax(logits, dim=-1)
        context = (attn @ v).reshape(batch, self.heads * self.head_dim)

        hidden = self.norm(query + F.gelu(self.out_proj(context)))
        return self.output(hidden)

    def score(self, enhanced: torch.Tensor) -> torch.Tensor:
        """Success logit for each enhanced query."""
        return self.score_head(enhanced).squeeze(-1)


class TorchEnhancerModel:
    """
    EnhancerModel implementation over GraphAttentionModel.

    Training optimizes binary cross-entropy of the score head on labelled
    samples; parameter updates go through ``kernels.adamw_step`` on numpy
    views of the parameter tensors.
    """

    def __init__(self, config):
        self.config = config
        output_dim = config.output_dim or config.input_dim
        if config.seed is not None:
            with torch.random.fork_rng(devices=[]):
                torch.manual_seed(config.seed)
                self.network = GraphAttentionModel(config.input_dim, output_dim, config.heads, config.hidden_dim)
        else:
            self.network = GraphAttentionModel(config.input_dim, output_dim, config.heads, config.hidden_dim)
        self._moments = {
            name: (np.zeros(tuple(p.shape), dtype=np.float32), np.zeros(tuple(p.shape), dtype=np.float32))
            for name, p in self.network.named_parameters()
        }
        self._step = 0

    def forward(self, query: np.ndarray, neighbors: np.ndarray, weights: np.ndarray) -> np.ndarray:
        if len(weights) != len(neighbors):
            raise ValueError(f"Got {len(neighbors)} neighbors but {len(weights)} weights")
        self.network.eval()
        with torch.no_grad():
            q = torch.as_tensor(query, dtype=torch.float32).unsqueeze(0)
            n = torch.as_tensor(np.asarray(neighbors, dtype=np.float32)).unsqueeze(0)
            w = torch.as_tensor(np.asarray(weights, dtype=np.float32)).unsqueeze(0)
            out = self.network(q, n, w)[0]
        return out.numpy().astype(np.float32)

    def fit(self, samples: Sequence, epochs: int, batch_size: int) -> float:
        features = torch.as_tensor(np.vstack([s.embedding for s in samples]), dtype=torch.float32)
        labels = torch.as_tensor([float(s.label) for s in samples], dtype=torch.float32)
        generator = torch.Generator()
        if self.config.seed is not None:
            generator.manual_seed(self.config.seed)

        epoch_loss = 0.0
        self.network.train()
        for epoch in range(epochs):
            order = torch.randperm(len(samples), generator=generator)
            total = 0.0
            for begin in range(0, len(samples), batch_size):
                idx = order[begin:begin + batch_size]
                x = features[idx]
                neighbors = torch.zeros((x.shape[0], 0, x.shape[1]))
                weights = torch.zeros((x.shape[0], 0))

                logits = self.network.score(self.network(x, neighbors, weights))
                loss = F.binary_cross_entropy_with_logits(logits, labels[idx])

                self.network.zero_grad()
                loss.backward()
                self._apply_gradients()
                total += loss.item() * x.shape[0]
            epoch_loss = total / len(samples)
            logger.debug(f"Enhancer epoch {epoch + 1}/{epochs}: loss={epoch_loss:.6f}")
        self.network.eval()
        return epoch_loss

    def _apply_gradients(self):
        self._step += 1
        for name, param in self.network.named_parameters():
            if param.grad is None:
                continue
            first, second = self._moments[name]
            adamw_step(
                param.detach().numpy(),
                param.grad.detach().numpy(),
                first,
                second,
                self._step,
                lr=self.config.learning_rate,
                weight_decay=self.config.weight_decay,
            )

    def state(self) -> dict:
        return {"network": self.network.state_dict(), "step": self._step}

    def restore(self, state: dict):
        self.network.load_state_dict(state["network"])
        self._step = int(state.get("step", 0))
        self.network.eval()
