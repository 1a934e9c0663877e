"""
Regras de gamificação: XP por tentativa, níveis, conquistas e ranking.

Tudo aqui é calculado sobre dados já carregados (histórico de tentativas do
aluno, conquistas já desbloqueadas, totais de XP); a persistência fica em
main.py. As tabelas de níveis, XP e conquistas são configuração e podem ser
substituídas via app.config.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta

logger = logging.getLogger(__name__)

# ==========================================
# NÍVEIS E XP
# ==========================================

NIVEIS = (
    {'nivel': 1, 'nome': 'Iniciante', 'xp_necessario': 0},
    {'nivel': 2, 'nome': 'Aprendiz', 'xp_necessario': 200},
    {'nivel': 3, 'nome': 'Estudante', 'xp_necessario': 500},
    {'nivel': 4, 'nome': 'Dedicado', 'xp_necessario': 1000},
    {'nivel': 5, 'nome': 'Avançado', 'xp_necessario': 2000},
    {'nivel': 6, 'nome': 'Expert', 'xp_necessario': 4000},
    {'nivel': 7, 'nome': 'Mestre', 'xp_necessario': 7000},
    {'nivel': 8, 'nome': 'Lenda', 'xp_necessario': 10000},
    {'nivel': 9, 'nome': 'Imortal', 'xp_necessario': 15000},
    {'nivel': 10, 'nome': 'Divino', 'xp_necessario': 25000},
)


@dataclass(frozen=True)
class PoliticaXP:
    completar_prova: int = 50
    ser_aprovado: int = 100
    # (nota mínima, bônus); vale a primeira faixa atingida, da maior para a menor
    faixas_nota: tuple = ((100, 50),)
    primeira_prova_simulado: int = 30
    streak_diario: int = 20


POLITICA_PADRAO = PoliticaXP()


@dataclass(frozen=True)
class NivelInfo:
    nivel: int
    nome: str
    xp_atual: int
    xp_necessario: int
    xp_proximo_nivel: int
    progresso: int

    def to_dict(self):
        return {
            'nivel': self.nivel, 'nome': self.nome, 'xp_atual': self.xp_atual,
            'xp_necessario': self.xp_necessario, 'xp_proximo_nivel': self.xp_proximo_nivel,
            'progresso': self.progresso,
        }


def calcular_nivel(xp, niveis=NIVEIS):
    """Maior nível cujo limiar de XP é <= xp. A tabela deve ser crescente."""
    indice = 0
    for i, nivel in enumerate(niveis):
        if nivel['xp_necessario'] <= xp:
            indice = i
        else:
            break

    atual = niveis[indice]
    proximo = niveis[indice + 1] if indice + 1 < len(niveis) else atual
    faixa = proximo['xp_necessario'] - atual['xp_necessario']
    progresso = min(100, (200 * (xp - atual['xp_necessario']) + faixa) // (2 * faixa)) if faixa > 0 else 100

    return NivelInfo(
        nivel=atual['nivel'], nome=atual['nome'], xp_atual=xp,
        xp_necessario=atual['xp_necessario'], xp_proximo_nivel=proximo['xp_necessario'],
        progresso=progresso,
    )


# ==========================================
# HISTÓRICO
# ==========================================

@dataclass
class RegistroTentativa:
    """Uma tentativa submetida, do ponto de vista da gamificação."""
    tentativa_id: int
    simulado_id: int
    categoria: str
    nota: float
    aprovado: bool
    data_fim: object
    tempo_gasto: int = None
    tempo_limite: int = None
    acertos_consecutivos: int = 0
    prazo: object = None


@dataclass
class Historico:
    tentativas: list = field(default_factory=list)

    def __post_init__(self):
        self.tentativas = sorted(self.tentativas, key=lambda t: t.data_fim)

    @property
    def total_provas(self):
        return len(self.tentativas)

    @property
    def total_aprovacoes(self):
        return sum(1 for t in self.tentativas if t.aprovado)

    @property
    def categorias(self):
        return {t.categoria for t in self.tentativas}

    def dias_ativos(self):
        return sorted({t.data_fim.date() for t in self.tentativas})

    def maior_streak(self):
        maior = atual = 0
        anterior = None
        for dia in self.dias_ativos():
            atual = atual + 1 if anterior is not None and dia - anterior == timedelta(days=1) else 1
            maior = max(maior, atual)
            anterior = dia
        return maior

    def streak_atual(self, hoje):
        dias = self.dias_ativos()
        if not dias or (hoje - dias[-1]).days > 1:
            return 0
        atual = 1
        for anterior, dia in zip(reversed(dias[:-1]), reversed(dias[1:])):
            if dia - anterior != timedelta(days=1):
                break
            atual += 1
        return atual

    def maior_sequencia_aprovacoes(self):
        maior = atual = 0
        for t in self.tentativas:
            atual = atual + 1 if t.aprovado else 0
            maior = max(maior, atual)
        return maior

    def aprovacoes_seguidas_atuais(self):
        atual = 0
        for t in reversed(self.tentativas):
            if not t.aprovado:
                break
            atual += 1
        return atual

    def maior_acertos_consecutivos(self):
        return max((t.acertos_consecutivos or 0 for t in self.tentativas), default=0)


# ==========================================
# CONQUISTAS
# ==========================================

def _horario(historico, valor):
    faixas = {'noturno': (0, 5), 'madrugada': (5, 7)}
    if valor not in faixas:
        return False
    inicio, fim = faixas[valor]
    return any(inicio <= t.data_fim.hour < fim for t in historico.tentativas)


def _percentual_tempo(tentativa):
    if not tentativa.tempo_limite or tentativa.tempo_gasto is None:
        return None
    return tentativa.tempo_gasto / (tentativa.tempo_limite * 60) * 100


def _tempo_percentual(historico, valor):
    usados = (_percentual_tempo(t) for t in historico.tentativas)
    return any(p is not None and p < valor for p in usados)


def _antes_do_prazo(historico, valor):
    no_prazo = sum(1 for t in historico.tentativas if t.prazo is not None and t.data_fim <= t.prazo)
    return no_prazo >= valor


PREDICADOS = {
    'provas_total': lambda h, v: h.total_provas >= v,
    'aprovacoes_total': lambda h, v: h.total_aprovacoes >= v,
    'nota_minima': lambda h, v: any(t.nota >= v for t in h.tentativas),
    'aprovacoes_seguidas': lambda h, v: h.maior_sequencia_aprovacoes() >= v,
    'streak_dias': lambda h, v: h.maior_streak() >= v,
    'horario': _horario,
    'tempo_percentual': _tempo_percentual,
    'acertos_seguidos': lambda h, v: h.maior_acertos_consecutivos() >= v,
    'categorias_diferentes': lambda h, v: len(h.categorias) >= v,
    'antes_do_prazo': _antes_do_prazo,
}

# Valor atual usado na barra de progresso de cada tipo de condição
PROGRESSO = {
    'provas_total': lambda h: h.total_provas,
    'aprovacoes_total': lambda h: h.total_aprovacoes,
    'aprovacoes_seguidas': lambda h: h.maior_sequencia_aprovacoes(),
    'streak_dias': lambda h: h.maior_streak(),
    'acertos_seguidos': lambda h: h.maior_acertos_consecutivos(),
    'categorias_diferentes': lambda h: len(h.categorias),
    'antes_do_prazo': lambda h: sum(1 for t in h.tentativas if t.prazo is not None and t.data_fim <= t.prazo),
}

CONQUISTAS_PADRAO = (
    # PROVAS
    {'codigo': 'primeira_prova', 'nome': 'Primeiros Passos', 'descricao': 'Conclua sua primeira prova',
     'icone': 'flag', 'categoria': 'PROVAS', 'xp_bonus': 10, 'condicao': {'tipo': 'provas_total', 'valor': 1}},
    {'codigo': 'maratonista', 'nome': 'Maratonista', 'descricao': 'Conclua 10 provas',
     'icone': 'run', 'categoria': 'PROVAS', 'xp_bonus': 50, 'condicao': {'tipo': 'provas_total', 'valor': 10}},
    {'codigo': 'incansavel', 'nome': 'Incansável', 'descricao': 'Conclua 25 provas',
     'icone': 'battery', 'categoria': 'PROVAS', 'xp_bonus': 100, 'condicao': {'tipo': 'provas_total', 'valor': 25}},
    {'codigo': 'veterano', 'nome': 'Veterano', 'descricao': 'Conclua 50 provas',
     'icone': 'medal', 'categoria': 'PROVAS', 'xp_bonus': 200, 'condicao': {'tipo': 'provas_total', 'valor': 50}},
    {'codigo': 'lendario', 'nome': 'Lendário', 'descricao': 'Conclua 100 provas',
     'icone': 'crown', 'categoria': 'PROVAS', 'xp_bonus': 500, 'condicao': {'tipo': 'provas_total', 'valor': 100}},
    # NOTAS
    {'codigo': 'aprovado', 'nome': 'Aprovado!', 'descricao': 'Seja aprovado em uma prova',
     'icone': 'check', 'categoria': 'NOTAS', 'xp_bonus': 20, 'condicao': {'tipo': 'aprovacoes_total', 'valor': 1}},
    {'codigo': 'destaque', 'nome': 'Destaque', 'descricao': 'Tire 90% ou mais em uma prova',
     'icone': 'star', 'categoria': 'NOTAS', 'xp_bonus': 50, 'condicao': {'tipo': 'nota_minima', 'valor': 90}},
    {'codigo': 'perfeito', 'nome': 'Perfeito', 'descricao': 'Tire 100% em uma prova',
     'icone': 'trophy', 'categoria': 'NOTAS', 'xp_bonus': 100, 'condicao': {'tipo': 'nota_minima', 'valor': 100}},
    {'codigo': 'consistente', 'nome': 'Consistente', 'descricao': 'Seja aprovado em 3 provas seguidas',
     'icone': 'trend', 'categoria': 'NOTAS', 'xp_bonus': 60, 'condicao': {'tipo': 'aprovacoes_seguidas', 'valor': 3}},
    {'codigo': 'imparavel', 'nome': 'Imparável', 'descricao': 'Seja aprovado em 10 provas seguidas',
     'icone': 'rocket', 'categoria': 'NOTAS', 'xp_bonus': 250, 'condicao': {'tipo': 'aprovacoes_seguidas', 'valor': 10}},
    # STREAKS
    {'codigo': 'focado', 'nome': 'Focado', 'descricao': 'Estude 3 dias seguidos',
     'icone': 'fire', 'categoria': 'STREAKS', 'xp_bonus': 30, 'condicao': {'tipo': 'streak_dias', 'valor': 3}},
    {'codigo': 'dedicado', 'nome': 'Dedicado', 'descricao': 'Estude 7 dias seguidos',
     'icone': 'fire', 'categoria': 'STREAKS', 'xp_bonus': 70, 'condicao': {'tipo': 'streak_dias', 'valor': 7}},
    {'codigo': 'comprometido', 'nome': 'Comprometido', 'descricao': 'Estude 30 dias seguidos',
     'icone': 'fire', 'categoria': 'STREAKS', 'xp_bonus': 300, 'condicao': {'tipo': 'streak_dias', 'valor': 30}},
    # ESPECIAIS
    {'codigo': 'coruja', 'nome': 'Coruja', 'descricao': 'Finalize uma prova entre meia-noite e 5h',
     'icone': 'moon', 'categoria': 'ESPECIAIS', 'xp_bonus': 25, 'condicao': {'tipo': 'horario', 'valor': 'noturno'}},
    {'codigo': 'madrugador', 'nome': 'Madrugador', 'descricao': 'Finalize uma prova entre 5h e 7h',
     'icone': 'sun', 'categoria': 'ESPECIAIS', 'xp_bonus': 25, 'condicao': {'tipo': 'horario', 'valor': 'madrugada'}},
    {'codigo': 'veloz', 'nome': 'Veloz', 'descricao': 'Finalize uma prova usando menos da metade do tempo',
     'icone': 'clock', 'categoria': 'ESPECIAIS', 'xp_bonus': 30, 'condicao': {'tipo': 'tempo_percentual', 'valor': 50}},
    {'codigo': 'relampago', 'nome': 'Relâmpago', 'descricao': 'Finalize uma prova usando menos de 25% do tempo',
     'icone': 'bolt', 'categoria': 'ESPECIAIS', 'xp_bonus': 50, 'condicao': {'tipo': 'tempo_percentual', 'valor': 25}},
    {'codigo': 'sniper', 'nome': 'Sniper', 'descricao': 'Acerte 10 questões seguidas',
     'icone': 'target', 'categoria': 'ESPECIAIS', 'xp_bonus': 40, 'condicao': {'tipo': 'acertos_seguidos', 'valor': 10}},
    {'codigo': 'explorador', 'nome': 'Explorador', 'descricao': 'Faça provas de 3 categorias diferentes',
     'icone': 'compass', 'categoria': 'ESPECIAIS', 'xp_bonus': 40, 'condicao': {'tipo': 'categorias_diferentes', 'valor': 3}},
    {'codigo': 'pontual', 'nome': 'Pontual', 'descricao': 'Finalize uma prova de turma antes do prazo',
     'icone': 'calendar', 'categoria': 'ESPECIAIS', 'xp_bonus': 15, 'condicao': {'tipo': 'antes_do_prazo', 'valor': 1}},
)


def _campo(conquista, nome):
    return conquista[nome] if isinstance(conquista, dict) else getattr(conquista, nome)


def condicao_satisfeita(condicao, historico):
    predicado = PREDICADOS.get(condicao.get('tipo'))
    if predicado is None:
        logger.warning('Tipo de condição de conquista desconhecido: %s', condicao.get('tipo'))
        return False
    return predicado(historico, condicao.get('valor'))


def avaliar_conquistas(catalogo, historico, desbloqueadas):
    """
    Conquistas do catálogo cuja condição vale para o histórico e que ainda não
    estão em `desbloqueadas` (conjunto de códigos). Rodar de novo com o mesmo
    histórico e as novas conquistas incluídas em `desbloqueadas` não devolve nada.
    """
    return [c for c in catalogo
            if _campo(c, 'codigo') not in desbloqueadas and condicao_satisfeita(_campo(c, 'condicao'), historico)]


def progresso_conquista(conquista, historico, desbloqueada):
    if desbloqueada:
        return {'progresso': 100, 'progresso_atual': None, 'progresso_total': None}
    condicao = _campo(conquista, 'condicao')
    medida = PROGRESSO.get(condicao.get('tipo'))
    if medida is None:
        # Conquistas especiais (horário, tempo) não têm progresso parcial
        return {'progresso': 0, 'progresso_atual': 0, 'progresso_total': 1}
    atual, total = medida(historico), condicao.get('valor')
    progresso = min(100, (200 * atual + total) // (2 * total)) if total else 0
    return {'progresso': progresso, 'progresso_atual': atual, 'progresso_total': total}


# ==========================================
# PREMIAÇÃO DE UMA TENTATIVA
# ==========================================

@dataclass
class Premiacao:
    xp_delta: int
    level_ups: int
    novas_conquistas: list
    eventos: list
    nivel_anterior: int
    nivel_novo: int


def xp_da_tentativa(politica, nota, foi_aprovado, primeira_no_simulado=False, continuou_streak=False):
    """Lista de (motivo, xp) concedidos por uma tentativa submetida."""
    eventos = [('completar_prova', politica.completar_prova)]
    if foi_aprovado:
        eventos.append(('aprovacao', politica.ser_aprovado))
    for minima, bonus in sorted(politica.faixas_nota, reverse=True):
        if nota >= minima:
            eventos.append((f'nota_{minima}', bonus))
            break
    if primeira_no_simulado:
        eventos.append(('primeira_prova_simulado', politica.primeira_prova_simulado))
    if continuou_streak:
        eventos.append(('streak_diario', politica.streak_diario))
    return [(motivo, xp) for motivo, xp in eventos if xp]


def conceder(tentativa, historico, xp_anterior, catalogo, desbloqueadas,
             politica=POLITICA_PADRAO, niveis=NIVEIS):
    """
    XP, níveis e conquistas resultantes de `tentativa`, que já deve fazer
    parte de `historico`.
    """
    anteriores = [t for t in historico.tentativas if t.tentativa_id != tentativa.tentativa_id]
    primeira_no_simulado = not any(t.simulado_id == tentativa.simulado_id for t in anteriores)

    dia = tentativa.data_fim.date()
    dias_anteriores = {t.data_fim.date() for t in anteriores}
    continuou_streak = (dia - timedelta(days=1)) in dias_anteriores and dia not in dias_anteriores

    eventos = xp_da_tentativa(politica, tentativa.nota, tentativa.aprovado, primeira_no_simulado, continuou_streak)

    novas = avaliar_conquistas(catalogo, historico, desbloqueadas)
    for conquista in novas:
        bonus = _campo(conquista, 'xp_bonus')
        if bonus:
            eventos.append((f"conquista_{_campo(conquista, 'codigo')}", bonus))

    xp_delta = sum(xp for _, xp in eventos)
    nivel_anterior = calcular_nivel(xp_anterior, niveis).nivel
    nivel_novo = calcular_nivel(xp_anterior + xp_delta, niveis).nivel

    return Premiacao(
        xp_delta=xp_delta, level_ups=nivel_novo - nivel_anterior, novas_conquistas=novas,
        eventos=eventos, nivel_anterior=nivel_anterior, nivel_novo=nivel_novo,
    )


# ==========================================
# RANKING
# ==========================================

def ordenar_ranking(linhas, limite=None):
    """
    `linhas`: iterável de (usuario_id, xp, alcancado_em). Ordena por XP
    decrescente; empate vai para quem chegou primeiro ao total.
    """
    ordenadas = sorted(linhas, key=lambda l: (-l[1], l[2], l[0]))
    if limite is not None:
        ordenadas = ordenadas[:limite]
    return [{'posicao': i + 1, 'usuario_id': u, 'xp': xp, 'alcancado_em': em}
            for i, (u, xp, em) in enumerate(ordenadas)]


def posicao_real(xp_usuario, totais):
    """Posição de um usuário: quantos têm XP estritamente maior, mais um."""
    return sum(1 for xp in totais if xp > xp_usuario) + 1
