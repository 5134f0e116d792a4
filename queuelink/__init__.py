from .acknowledger import AckBridge as AckBridge
from .backend import Backend as Backend
from .backend import Listener as Listener
from .config import connect as connect
from .connection import Connection as Connection
from .consumer import AcknowledgingConsumer as AcknowledgingConsumer
from .consumer import Acknowledger as Acknowledger
from .consumer import Consumer as Consumer
from .consumer import ParallelConsumer as ParallelConsumer
from .errors import AcknowledgeError as AcknowledgeError
from .errors import CloseError as CloseError
from .errors import ConfigError as ConfigError
from .errors import ConnectCancelled as ConnectCancelled
from .errors import ConnectError as ConnectError
from .errors import ConsumeError as ConsumeError
from .errors import PublishError as PublishError
from .errors import QueueError as QueueError
from .errors import RegisterError as RegisterError
from .recovery import RecoveryListener as RecoveryListener
from .retry import RetryPolicy as RetryPolicy
