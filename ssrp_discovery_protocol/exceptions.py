#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package"""

class SsrpError(Exception):
  """Base class for all error exceptions defined by this package."""
  pass

class EncodingError(SsrpError, ValueError):
  """A request could not be encoded; e.g., the instance name is too long or not ASCII."""
  pass

class TransportError(SsrpError):
  """A socket-level failure while resolving, binding, sending or receiving.

  The underlying OSError, if any, is available as __cause__."""
  pass

class NoResponseError(SsrpError):
  """No datagram arrived before the response timeout on a single-response request."""
  pass

class InstanceNotFoundError(SsrpError):
  """A response arrived but did not describe the requested instance or DAC endpoint."""
  pass

class ParseError(SsrpError):
  """A response datagram could not be decoded."""
  pass

class MalformedResponseError(ParseError):
  """A response datagram is truncated, mis-framed or not valid text."""
  pass
